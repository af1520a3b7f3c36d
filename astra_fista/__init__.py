"""ASTRA-FISTA: FISTA / ordered-subsets FISTA tomographic reconstruction.

This library drives model-based iterative reconstruction with the accelerated
proximal-gradient method (FISTA) and its ordered-subsets variant, with
weighted least-squares, Group-Huber (ring removal) and Student-t data terms
and a chain of pluggable regularisers.

Modules:
--------
fista : Reconstruction driver
config : Configuration and validation
lipschitz : Power-method Lipschitz estimate
subsets : Ordered-subsets planning
fidelity : Data-fidelity terms and the Student-t loss
rings : Ring-artifact offset vector
regularisers : Regularisation dispatch and the CCPi backend
astra_backend : ASTRA projector and SIRT warm start (imported on demand, requires ASTRA)
io : HDF5 persistence

Examples:
---------
>>> from astra_fista import FISTAConfig, fista_reconstruction
>>> from astra_fista.astra_backend import AstraProjector
>>> result = fista_reconstruction(FISTAConfig(geometry=geom, volume_geometry=vol, sinogram=sino))
>>> result.volume.shape
"""

from .errors import ConfigurationError, NumericalAnomaly

from .geometry import (
    GeometryKind,
    VolumeGeometry,
    ProjectionGeometry,
    volume_geometry_from_astra,
)

from .projector import Projector, forward_project, back_project

from .lipschitz import estimate_lipschitz

from .subsets import SubsetPlan, plan_subsets

from .fidelity import FidelityKind, evaluate_fidelity, student_t

from .rings import RingTracker, soft_threshold

from .regularisers import (
    Penalty,
    DiffusionType,
    RegularisationSettings,
    RegulariserBackend,
    CCPiRegulariser,
    apply_regularisation,
)

from .config import FISTAConfig, configure_logging

from .monitor import ConvergenceMonitor, rmse

from .fista import FISTAResult, fista_reconstruction, momentum_sequence, next_momentum

from .io import save_result, load_result, load_sinogram

__version__ = "0.1.0"

__all__ = [
    'ConfigurationError',
    'NumericalAnomaly',
    'GeometryKind',
    'VolumeGeometry',
    'ProjectionGeometry',
    'volume_geometry_from_astra',
    'Projector',
    'forward_project',
    'back_project',
    'estimate_lipschitz',
    'SubsetPlan',
    'plan_subsets',
    'FidelityKind',
    'evaluate_fidelity',
    'student_t',
    'RingTracker',
    'soft_threshold',
    'Penalty',
    'DiffusionType',
    'RegularisationSettings',
    'RegulariserBackend',
    'CCPiRegulariser',
    'apply_regularisation',
    'FISTAConfig',
    'configure_logging',
    'ConvergenceMonitor',
    'rmse',
    'FISTAResult',
    'fista_reconstruction',
    'momentum_sequence',
    'next_momentum',
    'save_result',
    'load_result',
    'load_sinogram',
]
