"""Integrators for coordinates and for the fictitious lambda particle.

Convention: positions x have shape (..., dim), velocities v have shape (..., dim).

Integrators:
- BAOAB: Underdamped Langevin for Cartesian coordinates
- LambdaParticle: Langevin dynamics of theta, with lambda = sin²(theta)
"""

import torch
from typing import Callable
import math


ForceFunc = Callable[[torch.Tensor], torch.Tensor]

# Gas constant in kcal/mol/K.
R = 1.9872066e-3

# Converts the lambda force (kcal/mol) and random force into theta
# accelerations for a particle whose mass is given in amu-like units.
RANDOM_CONVERT = math.sqrt(4.184) / 10e9
RANDOM_CONVERT2 = RANDOM_CONVERT * RANDOM_CONVERT


class BAOAB:
    """BAOAB splitting for underdamped Langevin dynamics.

    B: velocity kick (half), A: position drift (half), O: Ornstein-Uhlenbeck noise,
    A: position drift (half), B: velocity kick (half).

    The force at the end of a step is returned and reused at the start of the
    next one, so a biased potential that advances internal state on every
    force call (the OSRW lambda particle) is evaluated exactly once per step.
    """

    def __init__(self, gamma: float = 1.0, kT: float = 1.0, mass: float = 1.0):
        self.gamma = gamma
        self.kT = kT
        self.mass = mass

    def step(self, x: torch.Tensor, v: torch.Tensor, force_fn: ForceFunc,
             dt: float, force: torch.Tensor | None = None
             ) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """Single BAOAB step. Returns (new_x, new_v, force at new_x)."""
        if force is None:
            force = force_fn(x)
        v = v + (dt / 2) * force / self.mass
        x = x + (dt / 2) * v
        alpha = math.exp(-self.gamma * dt)
        sigma = math.sqrt((self.kT / self.mass) * (1 - alpha**2))
        v = alpha * v + sigma * torch.randn_like(v)
        x = x + (dt / 2) * v
        force = force_fn(x)
        v = v + (dt / 2) * force / self.mass
        return x, v, force

    def run(self, x0: torch.Tensor, v0: torch.Tensor | None, force_fn: ForceFunc,
            dt: float, n_steps: int, store_every: int = 1
            ) -> tuple[torch.Tensor, torch.Tensor]:
        """Run trajectory. Returns (positions, velocities) each (n_stored, ...)."""
        x = x0
        v = v0 if v0 is not None else torch.randn_like(x0) * math.sqrt(self.kT / self.mass)
        n_stored = n_steps // store_every + 1
        traj_x = torch.empty((n_stored,) + x0.shape, device=x0.device, dtype=x0.dtype)
        traj_v = torch.empty((n_stored,) + x0.shape, device=x0.device, dtype=x0.dtype)
        traj_x[0], traj_v[0] = x0, v
        force = None
        idx = 1
        for i in range(1, n_steps + 1):
            x, v, force = self.step(x, v, force_fn, dt, force)
            if i % store_every == 0:
                traj_x[idx], traj_v[idx] = x, v
                idx += 1
        return traj_x, traj_v


class LambdaParticle:
    """Fictitious particle whose position theta maps to lambda = sin²(theta).

    Propagated with a Langevin leapfrog on theta. The force on theta follows
    from the chain rule, dU/dθ = dU/dλ · sin(2θ), so lambda stays in [0, 1]
    without any boundary handling.

    Args:
        temperature: Temperature in Kelvin.
        dt: Time step in femtoseconds.
        mass: Theta mass.
        friction: Theta friction coefficient.
        lam: Initial lambda.
        generator: Optional torch.Generator for reproducible noise.
    """

    def __init__(self, temperature: float, dt: float = 1.0,
                 mass: float = 1.0e-18, friction: float = 1.0e-19,
                 lam: float = 0.0, generator: torch.Generator | None = None):
        self.temperature = temperature
        self.dt = dt * 0.001
        self.mass = mass
        self.friction = friction
        self.generator = generator
        self.half_velocity = 0.0
        self.set_lambda(lam)

    def set_lambda(self, lam: float):
        if not 0.0 <= lam <= 1.0:
            raise ValueError(f"lambda must be in [0, 1], got {lam}")
        self.lam = lam
        self.theta = math.asin(math.sqrt(lam))

    def _gaussian(self) -> float:
        return torch.randn((), generator=self.generator, dtype=torch.float64).item()

    def step(self, dUdL: float) -> float:
        """Advance theta one time step under the force dU/dL. Returns lambda."""
        dt = self.dt
        rt2 = 2.0 * R * self.temperature * self.friction / dt
        random_force = math.sqrt(rt2) * self._gaussian() / RANDOM_CONVERT
        dEdL = -dUdL * math.sin(2.0 * self.theta)
        self.half_velocity = (
            (self.half_velocity * (2.0 * self.mass - self.friction * dt)
             + RANDOM_CONVERT2 * 2.0 * dt * (dEdL + random_force))
            / (2.0 * self.mass + self.friction * dt))
        self.theta = self.theta + dt * self.half_velocity
        if self.theta > math.pi:
            self.theta -= 2.0 * math.pi
        elif self.theta <= -math.pi:
            self.theta += 2.0 * math.pi
        sin_theta = math.sin(self.theta)
        self.lam = sin_theta * sin_theta
        return self.lam
