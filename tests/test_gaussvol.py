"""Tests for the Gaussian overlap volume tree."""

import logging
import math

import pytest
import torch
from osrwsim.gaussvol import (
    KFC, MAX_ORDER, GaussVol, GaussianVca, GeometryMismatchError, ogauss_alpha, pol_switch,
    VOLMINA, VOLMINB,
)


SPHERE = 4.0 / 3.0 * math.pi

POSITIONS = torch.tensor([
    [0.0, 0.0, 0.0],
    [1.5, 0.0, 0.0],
    [0.7, 1.3, 0.0],
    [0.5, 0.6, 1.2],
], dtype=torch.float64)
RADII = torch.tensor([1.0, 1.2, 0.9, 1.1], dtype=torch.float64)


def four_atoms(gammas=None):
    gammas = [0.5, 1.0, 1.5, -0.3] if gammas is None else gammas
    return GaussVol(4, radii=RADII, volumes=SPHERE * RADII**3, gammas=gammas)


def energy_at(gv, positions):
    gv.compute_tree(positions)
    return gv.compute_volume().energy


class TestOverlap:
    """Tests for two-Gaussian overlaps and switching."""

    def test_switch_limits(self):
        assert pol_switch(1.0) == (1.0, 0.0)
        assert pol_switch(0.0) == (0.0, 0.0)
        s, sp = pol_switch(0.5 * (VOLMINA + VOLMINB))
        assert s == pytest.approx(0.5)
        assert sp > 0.0

    def test_overlap_closed_form(self):
        g1 = GaussianVca(SPHERE, KFC, torch.zeros(3, dtype=torch.float64))
        g2 = GaussianVca(SPHERE, KFC, torch.tensor([1.5, 0.0, 0.0], dtype=torch.float64))
        gvol, g12, dgvol, dgvolv, sfp = ogauss_alpha(g1, g2)
        df = KFC / 2.0
        expected = SPHERE**2 / (math.pi / df) ** 1.5 * math.exp(-df * 2.25)
        assert gvol == pytest.approx(expected, rel=1e-12)
        assert g12.a == pytest.approx(2.0 * KFC)
        assert torch.allclose(g12.c, torch.tensor([0.75, 0.0, 0.0], dtype=torch.float64))
        assert dgvol == pytest.approx(-2.0 * df * expected)
        assert dgvolv == pytest.approx(expected / SPHERE)
        assert sfp == 1.0


class TestVolume:
    """Tests for volumes, energies and the tree layout."""

    def test_single_atom(self):
        gv = GaussVol(1, radii=[1.0], volumes=[SPHERE], gammas=[2.0])
        gv.compute_tree(torch.zeros(1, 3))
        result = gv.compute_volume()
        assert result.volume == pytest.approx(SPHERE)
        assert result.energy == pytest.approx(2.0 * SPHERE)
        assert torch.allclose(result.force, torch.zeros(1, 3, dtype=torch.float64))

    def test_two_spheres(self):
        """V = V1 + V2 - V12 with the analytic Gaussian overlap."""
        gv = GaussVol(2, radii=[1.0, 1.0], volumes=[SPHERE, SPHERE], gammas=[1.0, 1.0])
        gv.compute_tree([[0.0, 0.0, 0.0], [1.5, 0.0, 0.0]])
        result = gv.compute_volume()
        df = KFC / 2.0
        v12 = SPHERE**2 / (math.pi / df) ** 1.5 * math.exp(-df * 1.5**2)
        assert len(gv.tree.overlaps) == 4
        assert result.volume == pytest.approx(2.0 * SPHERE - v12, rel=1e-12)
        assert result.energy == pytest.approx(result.volume, rel=1e-12)
        assert torch.allclose(result.self_volume, torch.full((2,), SPHERE - 0.5 * v12, dtype=torch.float64))
        assert result.force[0, 0].item() > 0.0
        assert result.force[1, 0].item() == pytest.approx(-result.force[0, 0].item())

    def test_two_spheres_near_hard_sphere_lens(self):
        """The Gaussian overlap undershoots the hard-sphere lens by about 16% at d = 1.5."""
        d = 1.5
        gv = GaussVol(2, radii=[1.0, 1.0], volumes=[SPHERE, SPHERE], gammas=[1.0, 1.0])
        gv.compute_tree([[0.0, 0.0, 0.0], [d, 0.0, 0.0]])
        volume = gv.compute_volume().volume
        lens = math.pi * (4.0 + d) * (2.0 - d) ** 2 / 12.0
        assert 2.0 * SPHERE - volume == pytest.approx(lens, rel=0.25)
        assert volume == pytest.approx(2.0 * SPHERE - lens, rel=0.02)

    def test_self_volumes_sum_to_volume(self):
        gv = four_atoms()
        gv.compute_tree(POSITIONS)
        result = gv.compute_volume()
        assert result.self_volume.sum().item() == pytest.approx(result.volume, rel=1e-12)
        assert max(ov.level for ov in gv.tree.overlaps) == 4

    def test_unit_gamma_energy_is_volume(self):
        gv = four_atoms(gammas=[1.0, 1.0, 1.0, 1.0])
        gv.compute_tree(POSITIONS)
        result = gv.compute_volume()
        assert result.energy == pytest.approx(result.volume, rel=1e-12)

    def test_volume_below_sum_of_atoms(self):
        gv = four_atoms()
        gv.compute_tree(POSITIONS)
        assert gv.compute_volume().volume < gv.volumes.sum().item()

    def test_hydrogen_has_no_volume(self):
        gv = GaussVol(2, radii=[1.0, 1.0], volumes=[SPHERE, SPHERE], gammas=[1.0, 1.0],
                      is_hydrogen=[False, True])
        gv.compute_tree([[0.0, 0.0, 0.0], [0.5, 0.0, 0.0]])
        result = gv.compute_volume()
        assert result.volume == pytest.approx(SPHERE)
        assert result.self_volume[1].item() == 0.0
        assert len(gv.tree.overlaps) == 3

    def test_pruning(self):
        """A large threshold removes every overlap."""
        gv = GaussVol(4, radii=RADII, volumes=SPHERE * RADII**3, gammas=[1.0] * 4,
                      min_overlap_volume=1.0e6)
        gv.compute_tree(POSITIONS)
        assert gv.get_stats() == [0, 0, 0, 0]
        assert gv.compute_volume().volume == pytest.approx(gv.volumes.sum().item())

    def test_max_order(self):
        """Coincident atoms overlap at every order, but the tree stops at MAX_ORDER."""
        n = 10
        gv = GaussVol(n, radii=[1.0] * n, volumes=[SPHERE] * n, gammas=[1.0] * n)
        gv.compute_tree(torch.zeros(n, 3))
        levels = [ov.level for ov in gv.tree.overlaps]
        assert max(levels) == MAX_ORDER
        expected = sum(math.comb(n, k) for k in range(1, MAX_ORDER + 1))
        assert len(levels) == 1 + expected
        assert sum(gv.get_stats()) == expected - n
        assert gv.get_stats()[-1] == 0


class TestGradients:
    """Tests for analytic forces and volume derivatives."""

    def test_forces_match_finite_difference(self):
        gv = four_atoms()
        gv.compute_tree(POSITIONS)
        force = gv.compute_volume().force
        h = 1e-6
        for i in range(4):
            for k in range(3):
                plus, minus = POSITIONS.clone(), POSITIONS.clone()
                plus[i, k] += h
                minus[i, k] -= h
                fd = -(energy_at(gv, plus) - energy_at(gv, minus)) / (2 * h)
                assert force[i, k].item() == pytest.approx(fd, rel=1e-5, abs=1e-8)

    def test_forces_sum_to_zero(self):
        gv = four_atoms()
        gv.compute_tree(POSITIONS)
        total = gv.compute_volume().force.sum(dim=0)
        assert torch.allclose(total, torch.zeros(3, dtype=torch.float64), atol=1e-10)

    def test_volume_gradient_matches_finite_difference(self):
        """grad_v is dE/dV for each atomic volume."""
        gv = four_atoms()
        gv.compute_tree(POSITIONS)
        grad_v = gv.compute_volume().grad_v
        volumes = gv.volumes.clone()
        h = 1e-6
        for i in range(4):
            plus, minus = volumes.clone(), volumes.clone()
            plus[i] += h
            minus[i] -= h
            gv.set_volumes(plus)
            e_plus = energy_at(gv, POSITIONS)
            gv.set_volumes(minus)
            e_minus = energy_at(gv, POSITIONS)
            fd = (e_plus - e_minus) / (2 * h)
            assert grad_v[i].item() == pytest.approx(fd, rel=1e-5, abs=1e-8)
        gv.set_volumes(volumes)


class TestRescan:
    """Tests for updating an existing tree."""

    def test_rescan_volumes_matches_rebuild(self):
        gv = four_atoms()
        gv.compute_tree(POSITIONS)
        moved = POSITIONS + 0.01 * torch.tensor([[1.0, 0.0, 0.0], [0.0, -1.0, 0.0],
                                                 [0.5, 0.5, 0.0], [0.0, 0.0, 1.0]],
                                                dtype=torch.float64)
        gv.rescan_tree_volumes(moved)
        rescanned = gv.compute_volume()
        gv.compute_tree(moved)
        rebuilt = gv.compute_volume()
        assert rescanned.volume == pytest.approx(rebuilt.volume, rel=1e-12)
        assert rescanned.energy == pytest.approx(rebuilt.energy, rel=1e-12)
        assert torch.allclose(rescanned.force, rebuilt.force, rtol=1e-10, atol=1e-12)

    def test_rescan_gammas_matches_rebuild(self):
        gv = four_atoms()
        gv.compute_tree(POSITIONS)
        gv.set_gammas([2.0, -1.0, 0.25, 1.0])
        gv.rescan_tree_gammas()
        rescanned = gv.compute_volume()
        gv.compute_tree(POSITIONS)
        rebuilt = gv.compute_volume()
        assert rescanned.energy == pytest.approx(rebuilt.energy, rel=1e-12)

    def test_requires_tree(self):
        gv = four_atoms()
        with pytest.raises(RuntimeError):
            gv.compute_volume()
        with pytest.raises(RuntimeError):
            gv.rescan_tree_volumes(POSITIONS)


class TestValidation:
    """Tests for argument checking and diagnostics."""

    def test_mismatched_arrays(self):
        gv = GaussVol(3)
        with pytest.raises(GeometryMismatchError):
            gv.set_radii([1.0, 1.0])
        with pytest.raises(GeometryMismatchError):
            gv.set_gammas([1.0] * 4)
        with pytest.raises(ValueError):
            GaussVol(2, is_hydrogen=[True])

    def test_positions_shape(self):
        gv = GaussVol(2, volumes=[1.0, 1.0])
        with pytest.raises(GeometryMismatchError):
            gv.compute_tree(torch.zeros(3, 3))
        with pytest.raises(GeometryMismatchError):
            gv.compute_tree(torch.zeros(6))

    def test_print_tree(self, caplog):
        gv = four_atoms()
        gv.compute_tree(POSITIONS)
        with caplog.at_level(logging.INFO, logger="osrwsim.gaussvol"):
            gv.print_tree()
        assert "ChCount" in caplog.text
        assert len(caplog.records[-1].getMessage().splitlines()) == len(gv.tree.overlaps) + 1
