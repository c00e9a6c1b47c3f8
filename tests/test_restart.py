"""Tests for histogram and lambda restart files."""

import pytest
import torch
from osrwsim.restart import (
    HistogramRestart, LambdaRestart, RestartFormatError,
    read_histogram, write_histogram, read_lambda, write_lambda,
)


def make_histogram():
    torch.manual_seed(0)
    kernel = torch.rand(5, 7, dtype=torch.float64) / 3.0
    kernel[0, 0] = 0.0
    return HistogramRestart(
        temperature=298.15, theta_mass=1.0e-18, theta_friction=1.0e-19,
        bias_mag=0.05, bias_cutoff=5, count_interval=10,
        min_fl=-7.123456789012345, dfl=2.0, tempering=True, kernel=kernel,
    )


class TestHistogramRestart:
    """Tests for the histogram file."""

    def test_round_trip_exact(self, tmp_path):
        """Every value, including the kernel, survives a write/read cycle."""
        path = tmp_path / "system.his"
        original = make_histogram()
        write_histogram(path, original)
        loaded = read_histogram(path)
        assert loaded.temperature == original.temperature
        assert loaded.theta_mass == original.theta_mass
        assert loaded.theta_friction == original.theta_friction
        assert loaded.bias_mag == original.bias_mag
        assert loaded.bias_cutoff == 5 and loaded.count_interval == 10
        assert loaded.min_fl == original.min_fl
        assert loaded.dfl == original.dfl
        assert loaded.tempering is True
        assert (loaded.lambda_bins, loaded.fl_bins) == (5, 7)
        assert torch.equal(loaded.kernel, original.kernel)

    def test_header_layout(self, tmp_path):
        path = tmp_path / "system.his"
        write_histogram(path, make_histogram())
        lines = path.read_text().splitlines()
        assert lines[0].startswith("Temperature")
        assert lines[6].split() == ["Lambda-Bins", "5"]
        assert lines[10].split() == ["Tempering", "1"]
        assert len(lines) == 11 + 5

    def test_wrong_key(self, tmp_path):
        path = tmp_path / "bad.his"
        write_histogram(path, make_histogram())
        text = path.read_text().replace("Bias-Mag", "Bias-Magnitude")
        path.write_text(text)
        with pytest.raises(RestartFormatError):
            read_histogram(path)

    def test_missing_row(self, tmp_path):
        path = tmp_path / "bad.his"
        write_histogram(path, make_histogram())
        lines = path.read_text().splitlines()
        path.write_text("\n".join(lines[:-1]) + "\n")
        with pytest.raises(RestartFormatError):
            read_histogram(path)

    def test_short_row(self, tmp_path):
        path = tmp_path / "bad.his"
        write_histogram(path, make_histogram())
        lines = path.read_text().splitlines()
        lines[-1] = " ".join(lines[-1].split()[:-1])
        path.write_text("\n".join(lines) + "\n")
        with pytest.raises(RestartFormatError):
            read_histogram(path)

    def test_bad_number(self, tmp_path):
        path = tmp_path / "bad.his"
        write_histogram(path, make_histogram())
        lines = path.read_text().splitlines()
        lines[0] = "Temperature     warm"
        path.write_text("\n".join(lines) + "\n")
        with pytest.raises(RestartFormatError):
            read_histogram(path)

    def test_even_lambda_bins(self, tmp_path):
        path = tmp_path / "bad.his"
        r = make_histogram()
        r.kernel = torch.zeros(4, 7, dtype=torch.float64)
        write_histogram(path, r)
        with pytest.raises(RestartFormatError):
            read_histogram(path)

    def test_format_error_is_value_error(self):
        assert issubclass(RestartFormatError, ValueError)


class TestLambdaRestart:
    """Tests for the lambda file."""

    def test_round_trip(self, tmp_path):
        path = tmp_path / "system.lam"
        write_lambda(path, LambdaRestart(lam=0.123456789, half_velocity=-1.5e-3, steps_taken=1000))
        loaded = read_lambda(path)
        assert loaded == LambdaRestart(lam=0.123456789, half_velocity=-1.5e-3, steps_taken=1000)

    def test_missing_steps_taken(self, tmp_path):
        """Steps-Taken is optional."""
        path = tmp_path / "system.lam"
        path.write_text("Lambda          0.5\nLambda-Velocity 0.25\n")
        loaded = read_lambda(path)
        assert loaded.lam == 0.5
        assert loaded.half_velocity == 0.25
        assert loaded.steps_taken is None

    def test_write_without_steps(self, tmp_path):
        path = tmp_path / "system.lam"
        write_lambda(path, LambdaRestart(lam=1.0, half_velocity=0.0))
        assert "Steps-Taken" not in path.read_text()

    def test_lambda_out_of_range(self, tmp_path):
        path = tmp_path / "system.lam"
        path.write_text("Lambda          1.5\nLambda-Velocity 0.0\n")
        with pytest.raises(RestartFormatError):
            read_lambda(path)

    def test_truncated(self, tmp_path):
        path = tmp_path / "system.lam"
        path.write_text("Lambda          0.5\n")
        with pytest.raises(RestartFormatError):
            read_lambda(path)
