"""Run parameters for the OSRW bias engine."""

import logging
import os
from dataclasses import dataclass, replace
from typing import Mapping

from .integration import IntegrationType
from .kernel import lambda_bins_for_width


logger = logging.getLogger(__name__)


@dataclass
class OSRWConfig:
    """OSRW parameters with their default values.

    Intervals are in picoseconds, bin widths in lambda units or kcal/mol.
    """
    lambda_bin_width: float = 0.005
    fl_bin_width: float = 2.0
    fl_bins: int = 401
    bias_cutoff: int = 5
    bias_mag: float = 0.05
    count_interval: int = 10
    tempering: bool = True
    tempering_factor: float = 8.0
    temper_offset: float = 1.0
    integration_type: IntegrationType = IntegrationType.SIMPSONS
    theta_mass: float = 1.0e-18
    theta_friction: float = 1.0e-19
    print_interval: float = 1.0
    checkpoint_interval: float = 1.0
    asynchronous: bool = False
    reset_statistics: bool = False

    def __post_init__(self):
        if self.count_interval < 1:
            raise ValueError(f"count_interval must be positive, got {self.count_interval}")
        if self.fl_bin_width <= 0.0:
            raise ValueError(f"fl_bin_width must be positive, got {self.fl_bin_width}")
        self.integration_type = IntegrationType.parse(self.integration_type)
        if self.temper_offset < 0.0:
            self.temper_offset = 0.0

    @property
    def lambda_bins(self) -> int:
        return lambda_bins_for_width(self.lambda_bin_width)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides) -> "OSRWConfig":
        """Build a config from defaults, keyword overrides and the environment.

        Recognized variables:
            OSRW_TEMPER_OFFSET: bias coverage (kcal/mol) before tempering starts.
            OSRW_INTEGRATION_TYPE: quadrature rule for the diagnostic integral.
        """
        environ = os.environ if environ is None else environ
        config = cls(**overrides)

        value = environ.get("OSRW_TEMPER_OFFSET")
        if value is not None:
            try:
                temper_offset = float(value)
            except ValueError:
                logger.info(" Exception in parsing OSRW_TEMPER_OFFSET=%r, resetting to 1.0 kcal/mol.",
                            value)
                temper_offset = 1.0
            config = replace(config, temper_offset=max(temper_offset, 0.0))

        value = environ.get("OSRW_INTEGRATION_TYPE")
        if value is not None:
            config = replace(config, integration_type=IntegrationType.parse(value))
        return config
