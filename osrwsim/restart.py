"""Plain-text restart files for the OSRW histogram and the lambda particle.

Histogram file::

    Temperature     298.15
    Lambda-Mass     1e-18
    ...
    Tempering       1
    <FLambda-Bins values>     (one row per lambda bin)

Lambda file::

    Lambda          0.5
    Lambda-Velocity 0.0
    Steps-Taken     1000      (optional on read)

Floats are written with 17 significant digits so that a write/read cycle
reproduces every value exactly.
"""

from dataclasses import dataclass
from pathlib import Path

import torch

from .device import DTYPE


HISTOGRAM_KEYS = (
    "Temperature",
    "Lambda-Mass",
    "Lambda-Friction",
    "Bias-Mag",
    "Bias-Cutoff",
    "Count-Interval",
    "Lambda-Bins",
    "FLambda-Bins",
    "Flambda-Min",
    "Flambda-Width",
    "Tempering",
)


class RestartFormatError(ValueError):
    """Raised when a restart file cannot be parsed."""


@dataclass
class HistogramRestart:
    temperature: float
    theta_mass: float
    theta_friction: float
    bias_mag: float
    bias_cutoff: int
    count_interval: int
    min_fl: float
    dfl: float
    tempering: bool
    kernel: torch.Tensor

    @property
    def lambda_bins(self) -> int:
        return self.kernel.shape[0]

    @property
    def fl_bins(self) -> int:
        return self.kernel.shape[1]


@dataclass
class LambdaRestart:
    lam: float
    half_velocity: float
    steps_taken: int | None = None


def _fmt(value) -> str:
    if isinstance(value, bool):
        return str(int(value))
    if isinstance(value, int):
        return str(value)
    return f"{value:.17g}"


def _line(key: str, value) -> str:
    return f"{key:<16s}{_fmt(value)}\n"


def write_histogram(path, restart: HistogramRestart):
    kernel = restart.kernel.detach().to("cpu", DTYPE)
    values = (restart.temperature, restart.theta_mass, restart.theta_friction,
              restart.bias_mag, int(restart.bias_cutoff), int(restart.count_interval),
              restart.lambda_bins, restart.fl_bins, restart.min_fl, restart.dfl,
              bool(restart.tempering))
    with open(path, "w") as f:
        for key, value in zip(HISTOGRAM_KEYS, values):
            f.write(_line(key, value))
        for row in kernel.tolist():
            f.write(" ".join(f"{v:.17g}" for v in row))
            f.write("\n")


def _split(line: str, key: str, lineno: int) -> str:
    fields = line.split()
    if len(fields) != 2 or fields[0] != key:
        raise RestartFormatError(f"line {lineno}: expected '{key} <value>', got {line.strip()!r}")
    return fields[1]


def _parse(text: str, kind, key: str, lineno: int):
    try:
        return kind(text)
    except ValueError as e:
        raise RestartFormatError(f"line {lineno}: bad value for {key}: {text!r}") from e


def read_histogram(path) -> HistogramRestart:
    """Parse a histogram restart file.

    Raises:
        RestartFormatError: on a missing, misordered or malformed field, or a
            kernel body that does not match the declared bin counts.
    """
    lines = Path(path).read_text().splitlines()
    if len(lines) < len(HISTOGRAM_KEYS):
        raise RestartFormatError(f"truncated header: {len(lines)} lines")
    kinds = (float, float, float, float, int, int, int, int, float, float, int)
    header = {}
    for lineno, (key, kind) in enumerate(zip(HISTOGRAM_KEYS, kinds), start=1):
        header[key] = _parse(_split(lines[lineno - 1], key, lineno), kind, key, lineno)

    lambda_bins = header["Lambda-Bins"]
    fl_bins = header["FLambda-Bins"]
    if lambda_bins < 3 or lambda_bins % 2 == 0:
        raise RestartFormatError(f"Lambda-Bins must be odd and >= 3, got {lambda_bins}")
    if fl_bins < 1:
        raise RestartFormatError(f"FLambda-Bins must be positive, got {fl_bins}")
    if header["Flambda-Width"] <= 0.0:
        raise RestartFormatError(f"Flambda-Width must be positive, got {header['Flambda-Width']}")

    body = [line for line in lines[len(HISTOGRAM_KEYS):] if line.strip()]
    if len(body) != lambda_bins:
        raise RestartFormatError(f"expected {lambda_bins} kernel rows, found {len(body)}")
    rows = []
    for i, line in enumerate(body):
        fields = line.split()
        if len(fields) != fl_bins:
            raise RestartFormatError(
                f"kernel row {i}: expected {fl_bins} values, found {len(fields)}")
        rows.append([_parse(v, float, f"kernel row {i}", len(HISTOGRAM_KEYS) + i + 1)
                     for v in fields])

    return HistogramRestart(
        temperature=header["Temperature"],
        theta_mass=header["Lambda-Mass"],
        theta_friction=header["Lambda-Friction"],
        bias_mag=header["Bias-Mag"],
        bias_cutoff=header["Bias-Cutoff"],
        count_interval=header["Count-Interval"],
        min_fl=header["Flambda-Min"],
        dfl=header["Flambda-Width"],
        tempering=header["Tempering"] != 0,
        kernel=torch.tensor(rows, dtype=DTYPE),
    )


def write_lambda(path, restart: LambdaRestart):
    with open(path, "w") as f:
        f.write(_line("Lambda", float(restart.lam)))
        f.write(_line("Lambda-Velocity", float(restart.half_velocity)))
        if restart.steps_taken is not None:
            f.write(_line("Steps-Taken", int(restart.steps_taken)))


def read_lambda(path) -> LambdaRestart:
    """Parse a lambda restart file. ``Steps-Taken`` may be absent."""
    lines = [line for line in Path(path).read_text().splitlines() if line.strip()]
    if len(lines) < 2:
        raise RestartFormatError(f"truncated lambda file: {len(lines)} lines")
    lam = _parse(_split(lines[0], "Lambda", 1), float, "Lambda", 1)
    if not 0.0 <= lam <= 1.0:
        raise RestartFormatError(f"Lambda must be in [0, 1], got {lam}")
    velocity = _parse(_split(lines[1], "Lambda-Velocity", 2), float, "Lambda-Velocity", 2)
    steps = None
    if len(lines) > 2:
        steps = _parse(_split(lines[2], "Steps-Taken", 3), int, "Steps-Taken", 3)
    return LambdaRestart(lam=lam, half_velocity=velocity, steps_taken=steps)
