"""Device utilities for CPU/CUDA/MPS support.

The bias engine accumulates statistics in float64, so only devices with
double precision support are offered by default.
"""

import torch


DTYPE = torch.float64


def get_device(preference: str = "auto") -> torch.device:
    """Get the best available float64-capable device.

    Args:
        preference: "auto", "cpu", or "cuda"

    Returns:
        torch.device for computation
    """
    if preference == "cpu":
        return torch.device("cpu")
    if preference == "cuda":
        if torch.cuda.is_available():
            return torch.device("cuda")
        raise RuntimeError("CUDA requested but not available")
    if preference == "mps":
        raise RuntimeError("MPS does not support float64 histograms")

    if torch.cuda.is_available():
        return torch.device("cuda")
    return torch.device("cpu")


def available_devices(float64: bool = True) -> list[str]:
    """Return list of available device names.

    MPS is only listed when float64 support is not required.
    """
    devices = ["cpu"]
    if torch.cuda.is_available():
        devices.append("cuda")
    if not float64 and torch.backends.mps.is_available():
        devices.append("mps")
    return devices
