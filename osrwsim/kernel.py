"""Recursion kernel: the 2-D (lambda, dU/dL) histogram behind the OSRW bias.

The kernel stores accumulated Gaussian weight on a grid of lambda bins by
dU/dL bins. Lambda bins are centered on i*dL so that bins 0 and N-1 are
half-width bins centered on lambda = 0 and 1. The dU/dL axis grows on demand
in blocks of 100 bins and never shrinks.

Two smoothed views of the kernel are provided:

- ``evaluate_bias``: the continuous bias potential G(λ, F_λ) and its two
  partial derivatives, summed over a window of bins around the sample with
  reflection at the lambda boundaries.
- ``evaluate_kernel`` / ``evaluate_kernel_grid``: the plain discrete sum at bin
  centers (no reflection), used to weight the free-energy average.

All access to the array and its geometry goes through ``lock``, a re-entrant
lock shared by the simulation loop and any background receiver.
"""

import logging
import math
import threading

import torch
import torch.nn.functional as F

from .device import DTYPE


logger = logging.getLogger(__name__)


def lambda_bins_for_width(dl: float) -> int:
    """Number of lambda bins for a requested bin width.

    Widths above 0.1 are capped and the count is forced odd so that the
    first and last bins are centered on the end states.
    """
    if dl <= 0.0:
        raise ValueError(f"lambda bin width must be positive, got {dl}")
    dl = min(dl, 0.1)
    bins = int(1.0 / dl)
    if bins % 2 == 0:
        bins += 1
    return bins


class RecursionKernel:
    """Thread-safe, growable 2-D histogram over (lambda, dU/dL).

    Args:
        lambda_bins: Number of lambda bins (odd, >= 3).
        fl_bins: Initial number of dU/dL bins.
        dfl: Width of a dU/dL bin (kcal/mol).
        min_fl: Lower edge of the dU/dL axis. Defaults to a grid centered on 0.
        bias_cutoff: Half-width, in bins, of the Gaussian summation window.
        bias_mag: Height of the Gaussian deposited per unit weight (kcal/mol).
        device: Device for the histogram tensor.
    """

    RESIZE_INCREMENT = 100

    def __init__(self, lambda_bins: int, fl_bins: int = 401, dfl: float = 2.0,
                 min_fl: float | None = None, bias_cutoff: int = 5,
                 bias_mag: float = 0.05, device: torch.device | str | None = None):
        if fl_bins < 1:
            raise ValueError(f"fl_bins must be positive, got {fl_bins}")
        if dfl <= 0.0:
            raise ValueError(f"dfl must be positive, got {dfl}")
        if bias_cutoff < 0:
            raise ValueError(f"bias_cutoff must be non-negative, got {bias_cutoff}")
        self.lock = threading.RLock()
        self.device = torch.device(device) if device is not None else torch.device("cpu")
        self.bias_cutoff = bias_cutoff
        self.bias_mag = bias_mag
        self._set_lambda_geometry(lambda_bins)
        self.dfl = dfl
        self.fl_bins = fl_bins
        self.min_fl = -(dfl * fl_bins) / 2.0 if min_fl is None else min_fl
        self._kernel = torch.zeros(lambda_bins, fl_bins, dtype=DTYPE, device=self.device)
        self.offsets = torch.zeros(lambda_bins, dtype=DTYPE, device=self.device)

    def _set_lambda_geometry(self, lambda_bins: int):
        if lambda_bins < 3 or lambda_bins % 2 == 0:
            raise ValueError(f"lambda_bins must be odd and >= 3, got {lambda_bins}")
        self.lambda_bins = lambda_bins
        self.dl = 1.0 / (lambda_bins - 1)
        self.min_lambda = -self.dl / 2.0

    @property
    def max_fl(self) -> float:
        return self.min_fl + self.fl_bins * self.dfl

    def lambda_bin(self, lam: float) -> int:
        """Lambda bin index, clamped to the grid."""
        lambda_bin = math.floor((lam - self.min_lambda) / self.dl)
        return min(max(lambda_bin, 0), self.lambda_bins - 1)

    def _fl_floor(self, dudl: float) -> int:
        fl_bin = math.floor((dudl - self.min_fl) / self.dfl)
        if fl_bin == self.fl_bins:
            fl_bin = self.fl_bins - 1
        return fl_bin

    def fl_bin(self, dudl: float) -> int:
        """dU/dL bin index. The value must lie inside the current bounds."""
        with self.lock:
            fl_bin = self._fl_floor(dudl)
            if not 0 <= fl_bin < self.fl_bins:
                raise ValueError(
                    f"dU/dL {dudl:.4f} outside histogram [{self.min_fl:.2f}, {self.max_fl:.2f})")
            return fl_bin

    def fl_centers(self) -> torch.Tensor:
        """dU/dL value at the center of every bin."""
        with self.lock:
            idx = torch.arange(self.fl_bins, dtype=DTYPE, device=self.device)
            return self.min_fl + idx * self.dfl + 0.5 * self.dfl

    def check_size(self, dudl: float) -> bool:
        """Grow the dU/dL axis until it contains dudl. Returns True on resize.

        Existing weights keep their physical dU/dL value: growth at the top
        appends bins, growth at the bottom prepends bins and shifts min_fl.
        """
        if not math.isfinite(dudl):
            raise ValueError(f"dU/dL must be finite, got {dudl}")
        with self.lock:
            resized = False
            if dudl >= self.max_fl:
                logger.info(" Current F_lambda %8.2f > maximum histogram size %8.2f.",
                            dudl, self.max_fl)
                new_bins = self.fl_bins
                while self.min_fl + new_bins * self.dfl <= dudl:
                    new_bins += self.RESIZE_INCREMENT
                grown = torch.zeros(self.lambda_bins, new_bins, dtype=DTYPE, device=self.device)
                grown[:, :self.fl_bins] = self._kernel
                self._kernel = grown
                self.fl_bins = new_bins
                resized = True
            if dudl < self.min_fl:
                logger.info(" Current F_lambda %8.2f < minimum histogram size %8.2f.",
                            dudl, self.min_fl)
                offset = self.RESIZE_INCREMENT
                while dudl < self.min_fl - offset * self.dfl:
                    offset += self.RESIZE_INCREMENT
                grown = torch.zeros(self.lambda_bins, self.fl_bins + offset,
                                    dtype=DTYPE, device=self.device)
                grown[:, offset:] = self._kernel
                self._kernel = grown
                self.min_fl = self.min_fl - offset * self.dfl
                self.fl_bins = self.fl_bins + offset
                resized = True
            if resized:
                logger.info(" New histogram %8.2f to %8.2f with %d bins.",
                            self.min_fl, self.max_fl, self.fl_bins)
            return resized

    def add_sample(self, lam: float, dudl: float, weight: float = 1.0) -> tuple[int, int]:
        """Add weight to the bin holding (lam, dudl). Returns the bin indices.

        Raises:
            ValueError: if any value is not finite or the weight is negative.
        """
        if not math.isfinite(lam):
            raise ValueError(f"lambda must be finite, got {lam}")
        if not (math.isfinite(weight) and weight >= 0.0):
            raise ValueError(f"weight must be finite and non-negative, got {weight}")
        with self.lock:
            self.check_size(dudl)
            lambda_bin = self.lambda_bin(lam)
            fl_bin = self.fl_bin(dudl)
            self._kernel[lambda_bin, fl_bin] += weight
            return lambda_bin, fl_bin

    def evaluate_bias(self, lam: float, dudl: float) -> tuple[float, float, float]:
        """Bias energy and its derivatives at (lam, dudl).

        Returns:
            (G, dG/dλ, dG/dF_λ)
        """
        with self.lock:
            n = self.lambda_bins
            window = torch.arange(-self.bias_cutoff, self.bias_cutoff + 1, device=self.device)

            l_center = self.lambda_bin(lam) + window
            delta_l = lam - l_center.to(DTYPE) * self.dl
            mirror = torch.ones(len(window), dtype=DTYPE, device=self.device)
            mirror[(l_center == 0) | (l_center == n - 1)] = 2.0
            l_index = torch.where(l_center < 0, -l_center, l_center)
            l_index = torch.where(l_center > n - 1, 2 * (n - 1) - l_center, l_index)
            l_valid = (l_index >= 0) & (l_index < n)

            fl_center = self._fl_floor(dudl) + window
            delta_fl = dudl - (self.min_fl + fl_center.to(DTYPE) * self.dfl + 0.5 * self.dfl)
            fl_valid = (fl_center >= 0) & (fl_center < self.fl_bins)

            block = self._kernel[l_index.clamp(0, n - 1)][:, fl_center.clamp(0, self.fl_bins - 1)]
            mask = l_valid[:, None] & fl_valid[None, :]
            weight = torch.where(mask, mirror[:, None] * block, torch.zeros_like(block))

            ls2 = (2.0 * self.dl) ** 2
            fls2 = (2.0 * self.dfl) ** 2
            bias = (weight * self.bias_mag
                    * torch.exp(-delta_l**2 / (2.0 * ls2))[:, None]
                    * torch.exp(-delta_fl**2 / (2.0 * fls2))[None, :])
            energy = bias.sum()
            dGdL = -(delta_l[:, None] / ls2 * bias).sum()
            dGdFL = -(delta_fl[None, :] / fls2 * bias).sum()
        return energy.item(), dGdL.item(), dGdFL.item()

    def _window_weights(self) -> torch.Tensor:
        # Gaussian of width 2 bins sampled at integer bin offsets.
        k = torch.arange(-self.bias_cutoff, self.bias_cutoff + 1, dtype=DTYPE, device=self.device)
        return torch.exp(-k**2 / 8.0)

    def evaluate_kernel(self, lambda_bin: int, fl_bin: int) -> float:
        """Smoothed kernel at the center of one bin (no lambda reflection)."""
        with self.lock:
            c = self.bias_cutoff
            w = self._window_weights()
            l_lo, l_hi = max(lambda_bin - c, 0), min(lambda_bin + c + 1, self.lambda_bins)
            f_lo, f_hi = max(fl_bin - c, 0), min(fl_bin + c + 1, self.fl_bins)
            block = self._kernel[l_lo:l_hi, f_lo:f_hi]
            wl = w[l_lo - (lambda_bin - c):l_hi - (lambda_bin - c)]
            wf = w[f_lo - (fl_bin - c):f_hi - (fl_bin - c)]
            return (self.bias_mag * (wl[:, None] * block * wf[None, :]).sum()).item()

    def evaluate_kernel_grid(self) -> torch.Tensor:
        """Smoothed kernel at every bin center, shape (lambda_bins, fl_bins)."""
        with self.lock:
            c = self.bias_cutoff
            w = self._window_weights()
            stencil = (self.bias_mag * w[:, None] * w[None, :])[None, None]
            return F.conv2d(self._kernel[None, None], stencil, padding=c)[0, 0]

    def set_offset(self, lambda_bin: int, value: float):
        with self.lock:
            self.offsets[lambda_bin] = value

    def reset_offsets(self):
        with self.lock:
            self.offsets.zero_()

    def weight(self, lambda_bin: int, fl_bin: int) -> float:
        with self.lock:
            return self._kernel[lambda_bin, fl_bin].item()

    def total_weight(self) -> float:
        with self.lock:
            return self._kernel.sum().item()

    def snapshot(self) -> torch.Tensor:
        """Copy of the histogram array, safe to read without the lock."""
        with self.lock:
            return self._kernel.clone()

    def clear(self):
        """Zero every weight and offset, keeping the current geometry."""
        with self.lock:
            self._kernel.zero_()
            self.offsets.zero_()

    def load(self, kernel: torch.Tensor, min_fl: float, dfl: float):
        """Replace the histogram and its geometry, e.g. from a restart file."""
        kernel = torch.as_tensor(kernel, dtype=DTYPE).to(self.device)
        if kernel.ndim != 2:
            raise ValueError(f"kernel must be 2-D, got shape {tuple(kernel.shape)}")
        if dfl <= 0.0:
            raise ValueError(f"dfl must be positive, got {dfl}")
        with self.lock:
            self._set_lambda_geometry(kernel.shape[0])
            self.fl_bins = kernel.shape[1]
            self.min_fl = min_fl
            self.dfl = dfl
            self._kernel = kernel.clone()
            self.offsets = torch.zeros(self.lambda_bins, dtype=DTYPE, device=self.device)
