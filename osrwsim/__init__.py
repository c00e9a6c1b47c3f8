"""Orthogonal space random walk free-energy sampling and Gaussian overlap volumes."""

from .device import get_device, available_devices
from .potentials import (
    Potential, Harmonic, LambdaPotential, AlchemicalPotential,
    UnsupportedDerivativeError,
)
from .integrators import BAOAB, LambdaParticle, R
from .kernel import RecursionKernel, lambda_bins_for_width
from .integration import IntegrationType, integrate_uniform, integrate_flambda
from .config import OSRWConfig
from .osrw import AbstractOSRW, TransitionTemperedOSRW
from .walkers import (
    Communicator, LocalCommGroup, LocalCommunicator, MPICommunicator, CommunicationError,
    SynchronousWalkerSynchronizer, AsynchronousWalkerSynchronizer, make_synchronizer,
)
from .restart import (
    HistogramRestart, LambdaRestart, RestartFormatError,
    read_histogram, write_histogram, read_lambda, write_lambda,
)
from .gaussvol import GaussVol, GaussianOverlapTree, GeometryMismatchError

__version__ = "0.1.0"
__all__ = [
    # Device
    "get_device", "available_devices",
    # Potentials
    "Potential", "Harmonic", "LambdaPotential", "AlchemicalPotential",
    "UnsupportedDerivativeError",
    # Integrators
    "BAOAB", "LambdaParticle", "R",
    # Bias engine
    "RecursionKernel", "lambda_bins_for_width",
    "IntegrationType", "integrate_uniform", "integrate_flambda",
    "OSRWConfig", "AbstractOSRW", "TransitionTemperedOSRW",
    # Walkers
    "Communicator", "LocalCommGroup", "LocalCommunicator", "MPICommunicator",
    "CommunicationError", "SynchronousWalkerSynchronizer", "AsynchronousWalkerSynchronizer",
    "make_synchronizer",
    # Restarts
    "HistogramRestart", "LambdaRestart", "RestartFormatError",
    "read_histogram", "write_histogram", "read_lambda", "write_lambda",
    # Volumes
    "GaussVol", "GaussianOverlapTree", "GeometryMismatchError",
]
