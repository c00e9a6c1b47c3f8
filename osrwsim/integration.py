"""Quadrature over uniformly spaced samples.

Used to integrate the ensemble-averaged dU/dL profile over lambda as a
diagnostic alongside the histogram estimate.
"""

import enum
import logging

import torch

from .device import DTYPE


logger = logging.getLogger(__name__)


class IntegrationType(enum.Enum):
    RECTANGULAR = "rectangular"
    TRAPEZOIDAL = "trapezoidal"
    SIMPSONS = "simpsons"
    BOOLE = "boole"

    @classmethod
    def parse(cls, value, default: "IntegrationType | None" = None) -> "IntegrationType":
        """Look up a rule by name, case-insensitively.

        Unknown names fall back to ``default`` (Simpson's rule) with a warning.
        """
        default = cls.SIMPSONS if default is None else default
        if isinstance(value, cls):
            return value
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            logger.warning(" Invalid integration type %r; defaulting to %s.", value, default.name)
            return default


# (points per panel - 1, weights, scale) for the closed Newton-Cotes rules.
_NEWTON_COTES = {
    IntegrationType.TRAPEZOIDAL: (1, (1.0, 1.0), 0.5),
    IntegrationType.SIMPSONS: (2, (1.0, 4.0, 1.0), 1.0 / 3.0),
    IntegrationType.BOOLE: (4, (7.0, 32.0, 12.0, 32.0, 7.0), 2.0 / 45.0),
}

# Rule used for intervals left over after the last full panel.
_FALLBACK = {
    IntegrationType.BOOLE: IntegrationType.SIMPSONS,
    IntegrationType.SIMPSONS: IntegrationType.TRAPEZOIDAL,
}


def trapezoid(x0: float, x1: float, f0: float, f1: float) -> float:
    """Area of one trapezoid."""
    return 0.5 * (f0 + f1) * (x1 - x0)


def integrate_uniform(y, dx: float,
                      rule: IntegrationType = IntegrationType.SIMPSONS) -> float:
    """Integrate samples y spaced dx apart, starting from the left.

    Panels of the chosen rule are laid down from the first point; any
    intervals that do not fill a whole panel at the right end are handled
    by the next lower-order rule.
    """
    y = torch.as_tensor(y, dtype=DTYPE)
    n_intervals = y.shape[0] - 1
    if n_intervals < 1:
        return 0.0
    if rule is IntegrationType.RECTANGULAR:
        return (y[:-1].sum() * dx).item()

    order, weights, scale = _NEWTON_COTES[rule]
    n_full = (n_intervals // order) * order
    total = 0.0
    if n_full > 0:
        starts = torch.arange(0, n_full, order)
        panels = y[starts[:, None] + torch.arange(order + 1)[None, :]]
        w = torch.tensor(weights, dtype=DTYPE)
        total = (scale * dx * (panels * w).sum()).item()
    if n_full < n_intervals:
        total += integrate_uniform(y[n_full:], dx, _FALLBACK[rule])
    return total


def integrate_flambda(flambda, dl: float,
                      rule: IntegrationType = IntegrationType.SIMPSONS,
                      zero_at_ends: bool = False) -> float:
    """Integrate a per-bin dU/dL profile over lambda in [0, 1].

    Interior bin centers dL..1-dL are integrated with ``rule``. The two end
    bins are half width, so [0, dL] and [1-dL, 1] are covered with trapezoids
    through the end-bin midpoints at dL/4 and 1-dL/4. The values at lambda 0
    and 1 are extrapolated linearly from the two outermost bins unless dU/dL
    is known to vanish there.
    """
    f = torch.as_tensor(flambda, dtype=DTYPE)
    n = f.shape[0]
    if n < 3:
        raise ValueError(f"need at least 3 lambda bins, got {n}")
    val = integrate_uniform(f[1:-1], dl, rule)

    dl_4 = 0.25 * dl
    f = f.tolist()
    val0 = val1 = 0.0
    if not zero_at_ends:
        recip_slope_len = 1.0 / (0.75 * dl)
        val0 = f[0] + (f[0] - f[1]) * recip_slope_len * dl_4
        val1 = f[-1] + (f[-1] - f[-2]) * recip_slope_len * dl_4
        logger.debug(" Inferred dU/dL values at 0 and 1: %10.5g , %10.5g", val0, val1)

    val += trapezoid(0.0, dl_4, val0, f[0])
    val += trapezoid(dl_4, dl, f[0], f[1])
    val += trapezoid(1.0 - dl, 1.0 - dl_4, f[-2], f[-1])
    val += trapezoid(1.0 - dl_4, 1.0, f[-1], val1)
    return val
