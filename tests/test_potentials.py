"""Tests for potential energy surfaces and lambda derivatives."""

import pytest
import torch
from osrwsim.potentials import (
    Harmonic, LambdaPotential, AlchemicalPotential,
)
from osrwsim.device import available_devices


DEVICES = available_devices()


class TestHarmonic:
    """Tests for harmonic potential."""

    @pytest.mark.parametrize("device", DEVICES)
    def test_energy_and_force(self, device):
        """U = 0.5 k |x|², F = -k x."""
        h = Harmonic(k=3.0).to(device)
        x = torch.tensor([1.0, -2.0, 0.5], dtype=torch.float64, device=device)
        assert h.energy(x).item() == pytest.approx(0.5 * 3.0 * 5.25)
        assert torch.allclose(h.force(x), -3.0 * x)

    def test_center(self):
        """A shifted center moves the minimum."""
        c = torch.tensor([1.0, 1.0], dtype=torch.float64)
        h = Harmonic(k=2.0, center=c)
        assert h.energy(c).item() == pytest.approx(0.0)

    def test_energy_and_gradient(self):
        """energy_and_gradient returns a float and a detached gradient."""
        h = Harmonic(k=2.0)
        x = torch.tensor([1.0, 2.0], dtype=torch.float64)
        u, g = h.energy_and_gradient(x)
        assert isinstance(u, float)
        assert u == pytest.approx(5.0)
        assert not g.requires_grad
        assert torch.allclose(g, 2.0 * x)


class TestAlchemicalPotential:
    """Tests for lambda-dependent potentials."""

    def make(self, exponent=1.0, lam=0.3):
        return AlchemicalPotential(Harmonic(1.0), Harmonic(4.0), exponent=exponent, lam=lam)

    def test_set_get_lambda(self):
        p = self.make()
        assert p.get_lambda() == pytest.approx(0.3)
        p.set_lambda(0.75)
        assert p.get_lambda() == pytest.approx(0.75)
        assert p.lam.dtype == torch.float64

    def test_energy_interpolates(self):
        """Energy is the lambda-weighted mix of the end states."""
        p = self.make(lam=0.25)
        x = torch.tensor([1.0, 1.0, 0.0], dtype=torch.float64)
        u0, u1 = 0.5 * 1.0 * 2.0, 0.5 * 4.0 * 2.0
        assert p.energy(x).item() == pytest.approx(0.75 * u0 + 0.25 * u1)

    def test_linear_path_derivatives(self):
        """dU/dL = U1 - U0, d²U/dL² = 0 and d²U/dXdL = (k1 - k0) x."""
        p = self.make()
        x = torch.tensor([0.5, -1.0, 2.0], dtype=torch.float64)
        r2 = (x**2).sum().item()
        assert p.dEdL(x) == pytest.approx(0.5 * 3.0 * r2)
        assert p.d2EdL2(x) == 0.0
        assert torch.allclose(p.d2EdXdL(x), 3.0 * x)

    def test_curved_path_derivatives(self):
        """With U = (1 - λ²) U0 + λ² U1, d²U/dL² = 2 (U1 - U0)."""
        lam = 0.4
        p = self.make(exponent=2.0, lam=lam)
        x = torch.tensor([1.0, 2.0], dtype=torch.float64)
        du = 0.5 * 3.0 * 5.0
        assert p.dEdL(x) == pytest.approx(2 * lam * du)
        assert p.d2EdL2(x) == pytest.approx(2 * du)
        assert torch.allclose(p.d2EdXdL(x), 2 * lam * 3.0 * x)

    def test_dEdL_matches_finite_difference(self):
        p = self.make(exponent=3.0, lam=0.6)
        x = torch.tensor([0.3, -0.7], dtype=torch.float64)
        h = 1e-6
        p.set_lambda(0.6 + h)
        up = p.energy(x).item()
        p.set_lambda(0.6 - h)
        um = p.energy(x).item()
        p.set_lambda(0.6)
        assert p.dEdL(x) == pytest.approx((up - um) / (2 * h), rel=1e-6)

    def test_derivatives_leave_lambda_untouched(self):
        p = self.make(lam=0.3)
        x = torch.ones(3, dtype=torch.float64)
        p.dEdL(x)
        p.d2EdXdL(x)
        assert p.get_lambda() == pytest.approx(0.3)
        assert not p.lam.requires_grad

    def test_base_class_requires_lambda_energy(self):
        p = LambdaPotential(lam=0.5)
        with pytest.raises(NotImplementedError):
            p.energy(torch.zeros(2, dtype=torch.float64))
        assert not p.dEdL_zero_at_ends
