"""Potential energy surfaces and lambda-aware potentials.

Endpoint potentials are plain ``Potential`` modules. A ``LambdaPotential``
adds the alchemical variable lambda and exposes the derivatives the bias
engine consumes: dU/dL, d2U/dL2 and d2U/dXdL. All lambda derivatives are
obtained with autograd, so subclasses only implement ``lambda_energy``.
"""

import torch
import torch.nn as nn


class UnsupportedDerivativeError(NotImplementedError):
    """Raised when a potential cannot provide a requested derivative."""


class Potential(nn.Module):
    """Base class for potentials. Subclasses must implement energy()."""

    def energy(self, x: torch.Tensor) -> torch.Tensor:
        """Compute potential energy. Override in subclass."""
        raise NotImplementedError

    def force(self, x: torch.Tensor) -> torch.Tensor:
        """Compute force = -grad(U). Works for any batch shape."""
        with torch.enable_grad():
            if not x.requires_grad:
                x = x.detach().requires_grad_(True)
            u = self.energy(x)
            grad = torch.autograd.grad(u.sum(), x, create_graph=True)[0]
        return -grad

    def energy_and_gradient(self, x: torch.Tensor) -> tuple[float, torch.Tensor]:
        """Return (energy, dU/dx) for a single configuration, detached."""
        with torch.enable_grad():
            x = x.detach().requires_grad_(True)
            u = self.energy(x).sum()
            grad = torch.autograd.grad(u, x)[0]
        return u.item(), grad.detach()

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.energy(x)


class Harmonic(Potential):
    """Simple harmonic oscillator: U(x) = 0.5 * k * ||x - x0||².

    Input shape: (..., d). Output shape: (...,).

    Args:
        k: Spring constant.
        center: Equilibrium position, if not the origin.
    """

    def __init__(self, k: float = 1.0, center: torch.Tensor | None = None):
        super().__init__()
        self.k = nn.Parameter(torch.tensor(k, dtype=torch.float64))
        if center is not None:
            self.center = nn.Parameter(center.clone().to(torch.float64))
        else:
            self.center = None

    def energy(self, x: torch.Tensor) -> torch.Tensor:
        if self.center is not None:
            x = x - self.center
        return 0.5 * self.k * (x**2).sum(-1)


class LambdaPotential(Potential):
    """A potential U(x; lambda) coupling two end states.

    The current lambda is held in a float64 buffer and changed with
    ``set_lambda``. Subclasses implement ``lambda_energy(x, lam)``; every
    derivative with respect to lambda is taken through autograd.

    Args:
        lam: Initial value of lambda in [0, 1].
    """

    def __init__(self, lam: float = 0.0):
        super().__init__()
        self.register_buffer("lam", torch.tensor(float(lam), dtype=torch.float64))

    @property
    def dEdL_zero_at_ends(self) -> bool:
        """Whether dU/dL vanishes at lambda = 0 and lambda = 1."""
        return False

    def set_lambda(self, lam: float):
        self.lam.fill_(float(lam))

    def get_lambda(self) -> float:
        return self.lam.item()

    def lambda_energy(self, x: torch.Tensor, lam: torch.Tensor) -> torch.Tensor:
        """Energy at coordinates x and lambda lam. Override in subclass."""
        raise NotImplementedError

    def energy(self, x: torch.Tensor) -> torch.Tensor:
        return self.lambda_energy(x, self.lam)

    def _dEdL_graph(self, x: torch.Tensor):
        """Build dU/dL with a graph attached to both x and lambda."""
        x = x.detach().requires_grad_(True)
        lam = self.lam.detach().clone().requires_grad_(True)
        u = self.lambda_energy(x, lam).sum()
        du_dl = torch.autograd.grad(u, lam, create_graph=True)[0]
        return x, lam, du_dl

    def dEdL(self, x: torch.Tensor) -> float:
        with torch.enable_grad():
            _, _, du_dl = self._dEdL_graph(x)
        return du_dl.item()

    def d2EdL2(self, x: torch.Tensor) -> float:
        with torch.enable_grad():
            _, lam, du_dl = self._dEdL_graph(x)
            if not du_dl.requires_grad:
                return 0.0
            d2 = torch.autograd.grad(du_dl, lam, allow_unused=True)[0]
        return 0.0 if d2 is None else d2.item()

    def d2EdXdL(self, x: torch.Tensor) -> torch.Tensor:
        with torch.enable_grad():
            x_req, _, du_dl = self._dEdL_graph(x)
            if not du_dl.requires_grad:
                return torch.zeros_like(x)
            d2 = torch.autograd.grad(du_dl, x_req, allow_unused=True)[0]
        return torch.zeros_like(x) if d2 is None else d2.detach()


class AlchemicalPotential(LambdaPotential):
    """Alchemical path between two end-state potentials.

    U(x; λ) = (1 - λ^p) U₀(x) + λ^p U₁(x)

    With p = 1 this is the usual linear path (d²U/dλ² = 0); p > 1 gives a
    curved path whose second lambda derivative is non-zero.

    Args:
        state0: Potential at lambda = 0.
        state1: Potential at lambda = 1.
        exponent: Path exponent p.
        lam: Initial lambda.
    """

    def __init__(self, state0: Potential, state1: Potential,
                 exponent: float = 1.0, lam: float = 0.0):
        super().__init__(lam)
        self.state0 = state0
        self.state1 = state1
        self.exponent = exponent

    def lambda_energy(self, x: torch.Tensor, lam: torch.Tensor) -> torch.Tensor:
        s = lam if self.exponent == 1.0 else lam**self.exponent
        return (1 - s) * self.state0.energy(x) + s * self.state1.energy(x)
