"""Orthogonal Space Random Walk (OSRW) biased potentials.

An OSRW potential wraps a LambdaPotential and adds a bias G(λ, ∂U/∂λ) built
from a 2-D histogram of visited (λ, ∂U/∂λ) pairs. Lambda is a dynamical
variable: every force evaluation advances a fictitious LambdaParticle under
the biased ∂U/∂λ, so the wrapped potential is driven along lambda while its
coordinates are integrated as usual (e.g. with BAOAB).

Classes:
- AbstractOSRW: lambda particle, step cadence, sample folding, restart I/O and
  the bias-strategy interface (add_bias, compute_bias_energy,
  check_kernel_size, evaluate_kernel, update_free_energy, destroy).
- TransitionTemperedOSRW: Gaussian-smoothed recursion kernel with transition
  tempering (Dama et al.); the height of new hills decays once the bias
  covers the whole lambda path.

Usage:
    osrw = TransitionTemperedOSRW(AlchemicalPotential(Harmonic(1.0), Harmonic(4.0)),
                                  temperature=298.15)
    integrator = BAOAB(gamma=1.0, kT=R * 298.15)
    x, v, f = x0, v0, None
    for _ in range(n_steps):
        x, v, f = integrator.step(x, v, osrw.force, dt, f)
    osrw.destroy()
"""

import logging
import math
from pathlib import Path

import torch

from .config import OSRWConfig
from .device import DTYPE
from .integration import integrate_flambda
from .integrators import R, LambdaParticle
from .kernel import RecursionKernel
from .potentials import LambdaPotential, Potential, UnsupportedDerivativeError
from .restart import (HistogramRestart, LambdaRestart, RestartFormatError, read_histogram,
                      read_lambda, write_histogram, write_lambda)
from .walkers import Communicator, LocalCommGroup, make_synchronizer


logger = logging.getLogger(__name__)

# Histogram is cleared once a walker passes this lambda (when requested).
LAMBDA_RESET_VALUE = 0.99
# Free-energy updates between full F(λ) tables.
FLAMBDA_PRINT_INTERVAL = 25
# Free-energy updates per running-average window.
AVERAGE_WINDOW = 1000


class AbstractOSRW(Potential):
    """Common machinery of OSRW bias strategies.

    Args:
        potential: The lambda-aware potential to bias.
        temperature: Temperature in Kelvin.
        dt: Time step in femtoseconds.
        config: OSRW parameters. Defaults to ``OSRWConfig.from_env()``.
        lambda_file: Lambda restart file, read if it exists and written on checkpoints.
        histogram_file: Histogram restart file, read if it exists and written by rank 0.
        comm: Communicator to other walkers. Defaults to a single walker.
        generator: torch.Generator for the lambda particle's noise.
        reset_num_steps: Ignore the step count stored in the lambda file.
    """

    def __init__(self, potential: LambdaPotential, temperature: float, dt: float = 1.0,
                 config: OSRWConfig | None = None, lambda_file=None, histogram_file=None,
                 comm: Communicator | None = None, generator: torch.Generator | None = None,
                 reset_num_steps: bool = True):
        super().__init__()
        self.potential = potential
        self.config = OSRWConfig.from_env() if config is None else config
        self.temperature = temperature
        self.dt = dt * 0.001
        self.lambda_file = Path(lambda_file) if lambda_file is not None else None
        self.histogram_file = Path(histogram_file) if histogram_file is not None else None
        self.comm = LocalCommGroup(1).communicator(0) if comm is None else comm
        self.rank = self.comm.rank

        config = self.config
        self.print_frequency = 100
        if config.print_interval >= self.dt:
            self.print_frequency = int(config.print_interval / self.dt)
        self.save_frequency = 1000
        if config.checkpoint_interval >= self.dt:
            self.save_frequency = int(config.checkpoint_interval / self.dt)
        self.count_interval = config.count_interval
        self.tempering = config.tempering
        self.reset_statistics = config.reset_statistics
        self.propagate_lambda = True

        self.particle = LambdaParticle(temperature, dt, config.theta_mass, config.theta_friction,
                                       lam=potential.get_lambda(), generator=generator)
        self.kernel = RecursionKernel(config.lambda_bins, config.fl_bins, config.fl_bin_width,
                                      bias_cutoff=config.bias_cutoff, bias_mag=config.bias_mag)
        self.flambda = torch.zeros(self.kernel.lambda_bins, dtype=DTYPE)

        self.energy_count = -1
        self.force_field_energy = 0.0
        self.force_field_dudl = 0.0
        self.dudl = 0.0
        self.bias_energy = 0.0
        self.total_energy = 0.0
        self._warned_d2 = False

        logger.info(" Orthogonal Space Random Walk Parameters")
        logger.info("  Gaussian Bias Magnitude:       %6.4f (kcal/mol)", config.bias_mag)
        logger.info("  Gaussian Bias Cutoff:           %6d bins", config.bias_cutoff)
        logger.info("  Print Interval:                 %6.3f psec", config.print_interval)
        logger.info("  Save Interval:                  %6.3f psec", config.checkpoint_interval)

        self.histogram_loaded = self._read_restarts(reset_num_steps)
        self.synchronizer = make_synchronizer(self.comm, self.fold_samples, config.asynchronous)

    @property
    def lam(self) -> float:
        return self.particle.lam

    def set_lambda(self, lam: float):
        self.particle.set_lambda(lam)
        self.potential.set_lambda(lam)

    # Bias strategy interface.

    def add_bias(self, dudl: float):
        """Publish a (λ, dU/dL) sample and refresh the free energy."""
        raise NotImplementedError

    def compute_bias_energy(self, lam: float, dudl: float) -> float:
        raise NotImplementedError

    def check_kernel_size(self, dudl: float) -> bool:
        raise NotImplementedError

    def evaluate_kernel(self, lambda_bin: int, fl_bin: int) -> float:
        raise NotImplementedError

    def update_free_energy(self, print_table: bool = False) -> float:
        raise NotImplementedError

    def destroy(self):
        raise NotImplementedError

    # Shared behavior.

    def fold_samples(self, samples):
        """Add walker samples to the histogram, in order, under the kernel lock."""
        with self.kernel.lock:
            for lam, dudl, weight in samples:
                if not (math.isfinite(lam) and math.isfinite(weight) and weight >= 0.0):
                    raise ValueError(f"invalid walker sample ({lam}, {dudl}, {weight})")
                self.check_kernel_size(dudl)
                if not self.tempering and weight < 1.0:
                    self.tempering = True
                    logger.info(" Tempering activated due to received weight of (%8.6f)", weight)
                if self.reset_statistics and lam > LAMBDA_RESET_VALUE:
                    self.kernel.clear()
                    self.reset_statistics = False
                    logger.info(" Cleared OSRW histogram (Lambda = %6.4f).", lam)
                self.kernel.add_sample(lam, dudl, weight)

    def current_1d_bias(self, lam: float) -> tuple[float, float]:
        """Energy -∫₀^λ F(λ') dλ' of the piecewise-linear F(λ) and its λ derivative."""
        f = self.flambda
        dl = self.kernel.dl
        n = f.shape[0]
        i0 = min(max(math.floor(lam / dl), 0), n - 2)
        full = (0.5 * (f[:i0] + f[1:i0 + 1])).sum().item() * dl
        f0 = f[i0].item()
        delta = f[i0 + 1].item() - f0
        s = lam - i0 * dl
        integral = full + f0 * s + delta * s * s / (2.0 * dl)
        return -integral, -(f0 + s * delta / dl)

    def _second_lambda_derivative(self, x: torch.Tensor) -> float:
        try:
            return self.potential.d2EdL2(x)
        except UnsupportedDerivativeError:
            if not self._warned_d2:
                logger.warning(" d2U/dL2 is not available; the bias will ignore it.")
                self._warned_d2 = True
            return 0.0

    def _langevin(self):
        lam = self.particle.step(self.dudl)
        self.potential.set_lambda(lam)

    def energy_and_gradient(self, x: torch.Tensor) -> tuple[float, torch.Tensor]:
        raise NotImplementedError

    def energy(self, x: torch.Tensor) -> torch.Tensor:
        """Biased energy at x without advancing lambda."""
        propagate = self.propagate_lambda
        self.propagate_lambda = False
        try:
            total, _ = self.energy_and_gradient(x)
        finally:
            self.propagate_lambda = propagate
        return torch.tensor(total, dtype=DTYPE, device=x.device)

    def force(self, x: torch.Tensor) -> torch.Tensor:
        """Biased force at x. Advances lambda when propagation is on."""
        _, grad = self.energy_and_gradient(x)
        return -grad

    def dEdL(self, x: torch.Tensor | None = None) -> float:
        """Biased dU/dL from the last evaluation."""
        return self.dudl

    def d2EdL2(self, x: torch.Tensor | None = None) -> float:
        raise UnsupportedDerivativeError(
            "Second derivatives of the bias require third derivatives of the potential.")

    def d2EdXdL(self, x: torch.Tensor | None = None) -> torch.Tensor:
        raise UnsupportedDerivativeError(
            "Second derivatives of the bias require third derivatives of the potential.")

    # Restarts.

    def histogram_restart(self) -> HistogramRestart:
        with self.kernel.lock:
            return HistogramRestart(
                temperature=self.temperature,
                theta_mass=self.particle.mass,
                theta_friction=self.particle.friction,
                bias_mag=self.kernel.bias_mag,
                bias_cutoff=self.kernel.bias_cutoff,
                count_interval=self.count_interval,
                min_fl=self.kernel.min_fl,
                dfl=self.kernel.dfl,
                tempering=self.tempering,
                kernel=self.kernel.snapshot(),
            )

    def lambda_restart(self) -> LambdaRestart:
        return LambdaRestart(self.particle.lam, self.particle.half_velocity, self.energy_count)

    def write_restart(self):
        """Write the histogram (rank 0 only) and lambda restart files."""
        if self.rank == 0 and self.histogram_file is not None:
            try:
                write_histogram(self.histogram_file, self.histogram_restart())
                logger.info(" Wrote OSRW histogram restart file to %s.", self.histogram_file.name)
            except OSError:
                logger.error(" Exception writing OSRW histogram restart file.", exc_info=True)
        if self.lambda_file is not None:
            try:
                write_lambda(self.lambda_file, self.lambda_restart())
                logger.info(" Wrote OSRW lambda restart file to %s.", self.lambda_file.name)
            except OSError:
                logger.error(" Exception writing OSRW lambda restart file.", exc_info=True)

    def _apply_histogram(self, restart: HistogramRestart):
        self.temperature = restart.temperature
        self.particle.temperature = restart.temperature
        self.particle.mass = restart.theta_mass
        self.particle.friction = restart.theta_friction
        self.count_interval = restart.count_interval
        self.tempering = restart.tempering
        with self.kernel.lock:
            self.kernel.bias_mag = restart.bias_mag
            self.kernel.bias_cutoff = restart.bias_cutoff
            self.kernel.load(restart.kernel, restart.min_fl, restart.dfl)
            self.flambda = torch.zeros(self.kernel.lambda_bins, dtype=DTYPE)

    def _read_restarts(self, reset_num_steps: bool) -> bool:
        loaded = False
        if self.histogram_file is not None and self.histogram_file.exists():
            try:
                restart = read_histogram(self.histogram_file)
                self._apply_histogram(restart)
            except (OSError, RestartFormatError, ValueError):
                logger.error(" Invalid OSRW histogram file %s; starting from defaults.",
                             self.histogram_file, exc_info=True)
            else:
                logger.info(" Continuing OSRW histogram from %s.", self.histogram_file.name)
                loaded = True
        if self.lambda_file is not None and self.lambda_file.exists():
            try:
                restart = read_lambda(self.lambda_file)
            except (OSError, RestartFormatError):
                logger.error(" Invalid OSRW lambda file %s; starting from defaults.",
                             self.lambda_file, exc_info=True)
            else:
                self.set_lambda(restart.lam)
                self.particle.half_velocity = restart.half_velocity
                if not reset_num_steps:
                    if restart.steps_taken is None:
                        logger.warning(" Could not find number of steps taken in OSRW lambda file.")
                    else:
                        self.energy_count = restart.steps_taken
                logger.info(" Continuing OSRW lambda from %s.", self.lambda_file.name)
        return loaded


class TransitionTemperedOSRW(AbstractOSRW):
    """Transition-tempered OSRW.

    Each added sample deposits ``tempering_weight`` into the recursion kernel.
    The weight is exp(-max(minBias - temperOffset, 0) / (temperingFactor·R·T)),
    where minBias is the smallest, over lambda bins, of the largest smoothed
    bias in that bin, so hills shrink once the whole path is covered.
    """

    def __init__(self, potential: LambdaPotential, temperature: float, dt: float = 1.0,
                 config: OSRWConfig | None = None, lambda_file=None, histogram_file=None,
                 comm: Communicator | None = None, generator: torch.Generator | None = None,
                 reset_num_steps: bool = True):
        super().__init__(potential, temperature, dt, config, lambda_file, histogram_file,
                         comm, generator, reset_num_steps)
        self.tempering_weight = 1.0
        self.total_free_energy = 0.0
        self.previous_free_energy = 0.0
        self.bias_count = 0
        self.fl_updates = 0
        self.last_average = 0.0
        self.last_std_dev = 0.0
        self._total_average = 0.0
        self._total_square = 0.0
        self._period_count = 0
        self.tempering_factor = self.config.tempering_factor
        self.temper_offset = self.config.temper_offset
        self.integration_type = self.config.integration_type
        logger.info("  Coverage before tempering:     %7.4g kcal/mol", self.temper_offset)
        if self.histogram_loaded:
            self.update_free_energy(True)

    @property
    def delta_t(self) -> float:
        if self.tempering_factor > 0.0:
            return self.tempering_factor * R * self.temperature
        return math.inf

    def check_kernel_size(self, dudl: float) -> bool:
        return self.kernel.check_size(dudl)

    def evaluate_kernel(self, lambda_bin: int, fl_bin: int) -> float:
        return self.kernel.evaluate_kernel(lambda_bin, fl_bin)

    def compute_bias_energy(self, lam: float, dudl: float) -> float:
        """Total bias (2-D hills plus 1-D F(λ) term) at an arbitrary point."""
        g, _, _ = self.kernel.evaluate_bias(lam, dudl)
        bias_1d, _ = self.current_1d_bias(lam)
        return bias_1d + g

    def energy_and_gradient(self, x: torch.Tensor) -> tuple[float, torch.Tensor]:
        ff_energy, grad = self.potential.energy_and_gradient(x)
        lam = self.particle.lam
        dudl_ff = self.potential.dEdL(x)
        d2udl2 = self._second_lambda_derivative(x)

        g, dGdL, dGdFL = self.kernel.evaluate_bias(lam, dudl_ff)
        dudl = dudl_ff + dGdL + dGdFL * d2udl2
        if dGdFL != 0.0:
            grad = grad + dGdFL * self.potential.d2EdXdL(x)
        bias_1d, dbias_1d = self.current_1d_bias(lam)
        dudl += dbias_1d

        self.force_field_energy = ff_energy
        self.force_field_dudl = dudl_ff
        self.dudl = dudl
        self.bias_energy = bias_1d + g
        self.total_energy = ff_energy + self.bias_energy
        logger.debug(" Bias Energy        %16.8f", self.bias_energy)
        logger.debug(" OSRW Potential     %16.8f  (Kcal/mole)", self.total_energy)

        if self.propagate_lambda:
            self.energy_count += 1
            if self.energy_count % self.print_frequency == 0:
                logger.info(" L=%6.4f (%3d) F_LU=%10.4f F_LB=%10.4f F_L=%10.4f V_L=%10.4f",
                            lam, self.kernel.lambda_bin(lam), dudl_ff, dudl - dudl_ff, dudl,
                            self.particle.half_velocity)
            if self.energy_count % self.count_interval == 0:
                self.add_bias(dudl_ff)
            self._langevin()
        return self.total_energy, grad

    def add_bias(self, dudl: float):
        self.synchronizer.publish(self.particle.lam, dudl, self.tempering_weight)
        self.bias_count += 1
        self.fl_updates += 1
        print_table = self.fl_updates % FLAMBDA_PRINT_INTERVAL == 0
        self.total_free_energy = self.update_free_energy(print_table)
        self._update_running_average(self.total_free_energy)
        if self.energy_count > 0 and self.energy_count % self.save_frequency == 0:
            self.write_restart()

    def _update_running_average(self, free_energy: float):
        self._total_average += free_energy
        self._total_square += free_energy * free_energy
        self._period_count += 1
        if self._period_count == AVERAGE_WINDOW:
            mean = self._total_average / AVERAGE_WINDOW
            variance = self._total_square / AVERAGE_WINDOW - mean * mean
            self.last_average = mean
            self.last_std_dev = math.sqrt(max(variance, 0.0))
            logger.info(" The running average is %12.4f kcal/mol and the stdev is %8.4f kcal/mol.",
                        self.last_average, self.last_std_dev)
            self._total_average = 0.0
            self._total_square = 0.0
            self._period_count = 0

    def update_free_energy(self, print_table: bool = False) -> float:
        """Recompute F(λ) and the free energy from the whole recursion kernel.

        For each lambda bin, F(λ) is the Boltzmann-weighted average of the dU/dL
        bin centers between the lowest and highest populated bins, weighted by
        exp(β·(smoothed kernel + offset)). An overflowing weight sets that
        bin's offset and the whole computation starts over.
        """
        beta = 1.0 / (R * self.temperature)
        kernel = self.kernel
        with kernel.lock:
            counts = kernel.snapshot()
            smoothed = kernel.evaluate_kernel_grid()
            centers = kernel.fl_centers()
            n_lambda, n_fl = counts.shape
            dl = kernel.dl

            populated = counts > 0
            sampled = populated.any(dim=1)
            fl_index = torch.arange(n_fl, device=counts.device)
            first = populated.to(DTYPE).argmax(dim=1)
            last = n_fl - 1 - populated.flip(1).to(DTYPE).argmax(dim=1)
            in_range = ((fl_index[None, :] >= first[:, None]) & (fl_index[None, :] <= last[:, None])
                        & sampled[:, None])
            zero = torch.zeros_like(smoothed)
            max_bias = torch.where(in_range, smoothed, zero).max(dim=1).values

            # A row whose offset cannot make exp() finite is left out.
            excluded = torch.zeros(n_lambda, dtype=torch.bool, device=counts.device)
            while True:
                exponent = torch.where(in_range, (smoothed + kernel.offsets[:, None]) * beta, zero)
                weights = torch.where(in_range & ~excluded[:, None], torch.exp(exponent), zero)
                overflow = (~torch.isfinite(weights)).any(dim=1)
                if not overflow.any():
                    break
                for i in torch.nonzero(overflow).flatten().tolist():
                    offset = -max_bias[i].item()
                    if not math.isfinite(offset) or offset == kernel.offsets[i].item():
                        logger.error(" Recursion kernel for L=%5.3f is not finite; "
                                     "excluding it from the free energy.", i * dl)
                        excluded[i] = True
                        continue
                    logger.info(" Setting recursion kernel offset for L=%5.3f to %8.3f.",
                                i * dl, offset)
                    kernel.set_offset(i, offset)
            sampled = sampled & ~excluded

            partition = weights.sum(dim=1)
            average = (weights * centers[None, :]).sum(dim=1)
            flambda = torch.where(sampled, average / torch.where(sampled, partition, 1.0),
                                  torch.zeros_like(partition))

            widths = torch.full((n_lambda,), dl, dtype=DTYPE, device=counts.device)
            widths[0] = widths[-1] = 0.5 * dl
            delta_free_energy = flambda * widths
            free_energy = delta_free_energy.sum().item()
            total_weight = counts.sum().item()
            min_fl = max_bias.min().item() if bool(sampled.all()) else 0.0

            table = None
            if print_table:
                table = self._flambda_table(counts, first, last, sampled, flambda, max_bias,
                                            delta_free_energy)

        self.flambda = flambda.cpu()

        if self.tempering:
            temper_energy = self.temper_offset - min_fl if min_fl > self.temper_offset else 0.0
            self.tempering_weight = math.exp(temper_energy / self.delta_t)

        if print_table or abs(free_energy - self.previous_free_energy) > 0.001:
            if table is not None:
                logger.info(table)
            logger.info(" Minimum Bias %8.3f", min_fl)
            from_numeric = self.integrate_numeric()
            logger.info(" Free energy from %s rule: %12.4f", self.integration_type.name, from_numeric)
            self.previous_free_energy = free_energy

        if print_table or self.bias_count % self.print_frequency == 0:
            logger.info(" The free energy is %12.4f kcal/mol (Counts: %6.2e, Weight: %6.4f).",
                        free_energy, total_weight, self.tempering_weight)
        return free_energy

    def _flambda_table(self, counts, first, last, sampled, flambda, max_bias, delta_free_energy) -> str:
        kernel = self.kernel
        dl = kernel.dl
        lines = ["  Weight    Lambda Bins     F_Lambda Bins   <   F_L  >  Max F_L     dG        G"]
        running = 0.0
        for i in range(counts.shape[0]):
            ll_l = max(i * dl - 0.5 * dl, 0.0)
            ul_l = min(i * dl + 0.5 * dl, 1.0)
            lla = ula = 0.0
            if sampled[i]:
                lla = kernel.min_fl + first[i].item() * kernel.dfl
                ula = kernel.min_fl + (last[i].item() + 1) * kernel.dfl
            running += delta_free_energy[i].item()
            lines.append(" %6.2e  %6.4f %6.4f   %7.1f %7.1f   %8.2f  %8.2f  %8.3f %8.3f" % (
                counts[i].sum().item(), ll_l, ul_l, lla, ula, flambda[i].item(),
                max_bias[i].item(), delta_free_energy[i].item(), running))
        return "\n".join(lines)

    def integrate_numeric(self) -> float:
        """Free energy from quadrature over the current F(λ) profile."""
        return integrate_flambda(self.flambda, self.kernel.dl, self.integration_type,
                                 self.potential.dEdL_zero_at_ends)

    def evaluate_pmf(self) -> torch.Tensor:
        """Log and return the smoothed kernel at every bin center."""
        grid = self.kernel.evaluate_kernel_grid()
        logger.info("\n".join(" ".join(f" {v:16.8f}" for v in row) for row in grid.tolist()))
        return grid

    def destroy(self):
        self.synchronizer.destroy()
