"""Tests for quadrature of the dU/dL profile."""

import logging
import math

import pytest
import torch
from osrwsim.integration import (
    IntegrationType, integrate_uniform, integrate_flambda, trapezoid,
)


ALL_RULES = list(IntegrationType)


class TestIntegrationType:
    """Tests for rule lookup."""

    def test_parse_case_insensitive(self):
        assert IntegrationType.parse("boole") is IntegrationType.BOOLE
        assert IntegrationType.parse(" Trapezoidal ") is IntegrationType.TRAPEZOIDAL
        assert IntegrationType.parse(IntegrationType.RECTANGULAR) is IntegrationType.RECTANGULAR

    def test_parse_invalid_falls_back(self, caplog):
        """Unknown names give Simpson's rule and a warning."""
        with caplog.at_level(logging.WARNING, logger="osrwsim.integration"):
            rule = IntegrationType.parse("midpoint")
        assert rule is IntegrationType.SIMPSONS
        assert "midpoint" in caplog.text

    def test_parse_custom_default(self):
        assert IntegrationType.parse("nope", IntegrationType.BOOLE) is IntegrationType.BOOLE


class TestIntegrateUniform:
    """Tests for composite Newton-Cotes rules."""

    def test_trapezoid(self):
        assert trapezoid(0.0, 2.0, 1.0, 3.0) == pytest.approx(4.0)

    def test_linear_exact_for_all_rules(self):
        x = torch.linspace(0.0, 2.0, 8, dtype=torch.float64)
        y = 3.0 * x + 1.0
        for rule in [IntegrationType.TRAPEZOIDAL, IntegrationType.SIMPSONS, IntegrationType.BOOLE]:
            assert integrate_uniform(y, 2.0 / 7, rule) == pytest.approx(8.0, rel=1e-12)

    def test_simpson_exact_for_cubic(self):
        x = torch.linspace(0.0, 1.0, 11, dtype=torch.float64)
        assert integrate_uniform(x**3, 0.1, IntegrationType.SIMPSONS) == pytest.approx(0.25, rel=1e-12)

    def test_boole_exact_for_quintic(self):
        x = torch.linspace(0.0, 1.0, 9, dtype=torch.float64)
        assert integrate_uniform(x**5, 0.125, IntegrationType.BOOLE) == pytest.approx(1.0 / 6.0, rel=1e-12)

    def test_leftover_intervals_use_lower_rule(self):
        """Three intervals: one Simpson panel plus one trapezoid."""
        y = torch.tensor([0.0, 1.0, 4.0, 9.0], dtype=torch.float64)
        expected = (0.0 + 4.0 * 1.0 + 4.0) / 3.0 + 0.5 * (4.0 + 9.0)
        assert integrate_uniform(y, 1.0, IntegrationType.SIMPSONS) == pytest.approx(expected)

    def test_rectangular_left_sum(self):
        y = torch.tensor([1.0, 2.0, 3.0], dtype=torch.float64)
        assert integrate_uniform(y, 0.5, IntegrationType.RECTANGULAR) == pytest.approx(1.5)

    def test_single_point(self):
        assert integrate_uniform([2.0], 0.1) == 0.0


class TestIntegrateFlambda:
    """Tests for integration over lambda bin centers with half-width end bins."""

    @pytest.mark.parametrize("rule", ALL_RULES)
    def test_sine_profile(self, rule):
        """∫₀¹ sin(πλ) dλ = 2/π for every rule."""
        n = 201
        lam = torch.linspace(0.0, 1.0, n, dtype=torch.float64)
        f = torch.sin(math.pi * lam)
        val = integrate_flambda(f, 1.0 / (n - 1), rule)
        assert val == pytest.approx(2.0 / math.pi, abs=1e-3)

    def test_rules_agree(self):
        n = 201
        lam = torch.linspace(0.0, 1.0, n, dtype=torch.float64)
        f = 3.0 + torch.cos(2.0 * math.pi * lam) + torch.sin(math.pi * lam)
        values = [integrate_flambda(f, 1.0 / (n - 1), rule) for rule in ALL_RULES]
        assert max(values) - min(values) < 1e-3

    def test_constant_profile(self):
        """A flat profile integrates to its value with or without extrapolation."""
        f = torch.full((11,), 2.5, dtype=torch.float64)
        assert integrate_flambda(f, 0.1) == pytest.approx(2.5)
        assert integrate_flambda(f, 0.1, zero_at_ends=True) < 2.5

    def test_too_few_bins(self):
        with pytest.raises(ValueError):
            integrate_flambda([1.0, 2.0], 1.0)
