"""Reconstruction configuration.

:class:`FISTAConfig` lists every recognised option with its default.
:meth:`FISTAConfig.validate` runs once before the first iteration and returns a
:class:`ValidatedConfig` with tensors on the target device and every string tag
resolved to an enum, so that the iteration loop never re-checks options.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

import numpy as np
import torch

from .errors import ConfigurationError
from .fidelity import FidelityKind
from .geometry import ProjectionGeometry, VolumeGeometry, volume_geometry_from_astra
from .regularisers import RegularisationSettings
from .subsets import SubsetPlan, plan_subsets

logger = logging.getLogger(__name__)

NAN_POLICIES = ("ignore", "warn", "raise")


def configure_logging(verbose: bool = False) -> None:
    """Configure module-wide logging for scripts."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


@dataclass
class FISTAConfig:
    """Options of a FISTA / OS-FISTA reconstruction.

    Attributes
    ----------
    geometry : ProjectionGeometry
        Projection geometry [required]
    volume_geometry : VolumeGeometry
        Reconstruction grid [required]
    sinogram : (Z, A, D) array-like
        Measured sinogram [required]; a 2D ``(A, D)`` array is one slice
    iterations : int
        Outer FISTA iterations
    lipschitz : float, optional
        Lipschitz constant; estimated with the power method when omitted
    weights : (Z, A, D) array-like, optional
        Statistical weights of the PWLS model (all ones by default)
    fidelity : str, optional
        ``'LS'``/``'PWLS'`` (default) or ``'students_data'``
    student_dof : float
        Degrees of freedom of the Student-t fidelity
    ground_truth : (Z, N, N) array-like, optional
        Exact phantom for the error trace
    roi : (Z, N, N) bool array-like, optional
        Region where the error is measured (``ground_truth >= 0`` by default)
    initial : (Z, N, N) array-like, optional
        Warm-start volume (zeros by default)
    ring_lambda : float
        L1 weight of the ring vector; ``> 0`` switches on Group-Huber fidelity
    ring_alpha : float
        Ring offset scaling; larger values (~20) speed up ring removal
    regularisation : RegularisationSettings
        Penalties and their parameters
    subsets : int, optional
        Number of ordered subsets; ``None`` or ``0`` runs classical FISTA
    nan_policy : str
        ``'ignore'``, ``'warn'`` or ``'raise'`` on non-finite iterates
    device : torch.device, optional
        Compute device (defaults to the sinogram's, else CPU)
    seed : int, optional
        Seed of the power-method starting field
    verbose : bool
        Show a progress bar
    """
    geometry: Optional[ProjectionGeometry] = None
    volume_geometry: Optional[VolumeGeometry] = None
    sinogram: Optional[Any] = None
    iterations: int = 40
    lipschitz: Optional[float] = None
    weights: Optional[Any] = None
    fidelity: Optional[str] = None
    student_dof: float = 1.0
    ground_truth: Optional[Any] = None
    roi: Optional[Any] = None
    initial: Optional[Any] = None
    ring_lambda: float = 0.0
    ring_alpha: float = 1.0
    regularisation: RegularisationSettings = field(default_factory=RegularisationSettings)
    subsets: Optional[int] = None
    nan_policy: str = "ignore"
    device: Optional[torch.device] = None
    seed: Optional[int] = None
    verbose: bool = False

    # MATLAB-style parameter names of the reference routine
    _PARAM_NAMES = {
        'iterFISTA': 'iterations',
        'L_const': 'lipschitz',
        'weights': 'weights',
        'fidelity': 'fidelity',
        'phantomExact': 'ground_truth',
        'ROI': 'roi',
        'initialize': 'initial',
        'Ring_LambdaR_L1': 'ring_lambda',
        'Ring_Alpha': 'ring_alpha',
        'subsets': 'subsets',
    }
    _REGUL_NAMES = {
        'Regul_device': 'device',
        'Regul_tol': 'tolerance',
        'Regul_Iterations': 'iterations',
        'Regul_time_step': 'time_step',
        'Regul_sigmaEdge': 'sigma_edge',
        'Regul_Dimension': 'dimension',
        'Regul_Lambda_ROFTV': 'rof_tv',
        'Regul_Lambda_FGPTV': 'fgp_tv',
        'Regul_Lambda_SBTV': 'sb_tv',
        'Regul_Lambda_Diffusion': 'diffusion',
        'Regul_FuncDiff_Type': 'diffusion_type',
        'Regul_Lambda_AnisDiff4th': 'diffusion_4th',
        'Regul_Lambda_TGV': 'tgv',
        'Regul_TGV_alpha0': 'tgv_alpha0',
        'Regul_TGV_alpha1': 'tgv_alpha1',
    }
    _IGNORED = ('show', 'maxvalplot', 'slice')

    @classmethod
    def from_params(cls, params: Mapping[str, Any], **overrides) -> "FISTAConfig":
        """Build a configuration from a MATLAB-style parameter record.

        ``proj_geom``/``vol_geom`` may be ASTRA geometry dictionaries or
        descriptor objects; ``sino`` must already be in ``(Z, A, D)`` layout.
        Unknown keys are logged and ignored.
        """
        kwargs = {}
        regul = {}
        for key, value in params.items():
            if key in ('proj_geom', 'vol_geom', 'sino'):
                continue
            if key in cls._PARAM_NAMES:
                kwargs[cls._PARAM_NAMES[key]] = value
            elif key in cls._REGUL_NAMES:
                regul[cls._REGUL_NAMES[key]] = value
            elif key in cls._IGNORED:
                logger.debug("Ignoring display parameter '%s'", key)
            else:
                logger.warning("Ignoring unrecognised parameter '%s'", key)

        if 'proj_geom' not in params:
            raise ConfigurationError("Please provide ASTRA projection geometry - proj_geom")
        if 'vol_geom' not in params:
            raise ConfigurationError("Please provide ASTRA object geometry - vol_geom")
        if 'sino' not in params:
            raise ConfigurationError("Please provide a sinogram")

        proj_geom = params['proj_geom']
        if isinstance(proj_geom, Mapping):
            proj_geom = ProjectionGeometry.from_astra(proj_geom)
        sino = params['sino']
        vol_geom = params['vol_geom']
        if isinstance(vol_geom, Mapping):
            slices = np.shape(sino)[0] if np.ndim(sino) == 3 else 1
            vol_geom = volume_geometry_from_astra(vol_geom, slices=slices)

        kwargs.update(overrides)
        return cls(
            geometry=proj_geom,
            volume_geometry=vol_geom,
            sinogram=sino,
            regularisation=RegularisationSettings(**regul),
            **kwargs,
        )

    def validate(self) -> "ValidatedConfig":
        """Check every option once and resolve it for the iteration loop."""
        if self.geometry is None:
            raise ConfigurationError("Please provide the projection geometry")
        if self.volume_geometry is None:
            raise ConfigurationError("Please provide the volume geometry")
        if self.sinogram is None:
            raise ConfigurationError("Please provide a sinogram")

        geometry = self.geometry
        vg = self.volume_geometry
        if self.device is not None:
            device = torch.device(self.device)
        elif isinstance(self.sinogram, torch.Tensor):
            device = self.sinogram.device
        else:
            device = torch.device('cpu')

        sino = _as_tensor(self.sinogram, device)
        if sino.ndim == 2:
            sino = sino.unsqueeze(0)
        expected = geometry.sinogram_shape(vg.slices)
        if tuple(sino.shape) != expected:
            raise ConfigurationError(
                f"sinogram shape {tuple(sino.shape)} does not match geometry (Z, A, D) = {expected}"
            )
        logger.info("Sinogram has a dimension of %d detectors; %d projections; %d vertical slices.",
                    sino.shape[2], sino.shape[1], sino.shape[0])

        if self.weights is None:
            weights = torch.ones_like(sino)
        else:
            weights = _as_tensor(self.weights, device)
            if weights.ndim == 2:
                weights = weights.unsqueeze(0)
            if weights.shape != sino.shape:
                raise ConfigurationError(
                    f"weights shape {tuple(weights.shape)} does not match sinogram shape {tuple(sino.shape)}"
                )
            if bool((weights < 0).any()):
                raise ConfigurationError("statistical weights must be non-negative")

        if int(self.iterations) != self.iterations or self.iterations < 0:
            raise ConfigurationError(f"iterations must be a non-negative integer, got {self.iterations}")

        lipschitz = None
        if self.lipschitz is not None:
            lipschitz = float(self.lipschitz)
            if lipschitz == 0.0:
                raise ConfigurationError("Lipschitz constant cannot be zero")
            if not math.isfinite(lipschitz) or lipschitz < 0:
                raise ConfigurationError(f"Lipschitz constant must be positive and finite, got {lipschitz}")

        if self.ring_lambda < 0:
            raise ConfigurationError("ring_lambda cannot be negative")
        # unknown tags are rejected even when ring removal takes precedence
        FidelityKind.resolve(self.fidelity)
        fidelity = FidelityKind.resolve(self.fidelity, self.ring_lambda)
        if fidelity is FidelityKind.GROUP_HUBER and self.ring_lambda <= 0:
            raise ConfigurationError("Group-Huber fidelity requires a positive ring_lambda")
        if self.student_dof <= 0:
            raise ConfigurationError("Student-t degrees of freedom must be positive")

        if self.initial is None:
            initial = torch.zeros(vg.shape, dtype=torch.float32, device=device)
        else:
            initial = _as_tensor(self.initial, device)
            if initial.ndim == 2:
                initial = initial.unsqueeze(0)
            if tuple(initial.shape) != vg.shape:
                raise ConfigurationError("The initialized volume has different dimensions!")
            initial = initial.clone()

        ground_truth = roi = None
        if self.ground_truth is not None:
            ground_truth = _as_tensor(self.ground_truth, device)
            if ground_truth.ndim == 2:
                ground_truth = ground_truth.unsqueeze(0)
            if tuple(ground_truth.shape) != vg.shape:
                raise ConfigurationError("ground truth has different dimensions from the volume")
            if self.roi is None:
                roi = ground_truth >= 0.0
            else:
                roi = _as_tensor(self.roi, device) != 0
                if roi.ndim == 2:
                    roi = roi.unsqueeze(0)
                if tuple(roi.shape) != vg.shape:
                    raise ConfigurationError("ROI mask has different dimensions from the volume")

        plan = None
        if self.subsets:
            plan = plan_subsets(geometry.angles, self.subsets)

        if self.nan_policy not in NAN_POLICIES:
            raise ConfigurationError(f"nan_policy must be one of {NAN_POLICIES}, got '{self.nan_policy}'")

        regularisation = self.regularisation.validate()
        for penalty, lam in regularisation.enabled():
            logger.info("%s regularisation is enabled (lambda=%g)", penalty.value, lam)

        return ValidatedConfig(
            geometry=geometry,
            volume_geometry=vg,
            sinogram=sino,
            weights=weights,
            iterations=int(self.iterations),
            lipschitz=lipschitz,
            fidelity=fidelity,
            student_dof=float(self.student_dof),
            ground_truth=ground_truth,
            roi=roi,
            initial=initial,
            ring_lambda=float(self.ring_lambda),
            ring_alpha=float(self.ring_alpha),
            regularisation=regularisation,
            plan=plan,
            nan_policy=self.nan_policy,
            device=device,
            seed=self.seed,
            verbose=self.verbose,
        )


@dataclass
class ValidatedConfig:
    geometry: ProjectionGeometry
    volume_geometry: VolumeGeometry
    sinogram: torch.Tensor
    weights: torch.Tensor
    iterations: int
    lipschitz: Optional[float]
    fidelity: FidelityKind
    student_dof: float
    ground_truth: Optional[torch.Tensor]
    roi: Optional[torch.Tensor]
    initial: torch.Tensor
    ring_lambda: float
    ring_alpha: float
    regularisation: RegularisationSettings
    plan: Optional[SubsetPlan]
    nan_policy: str
    device: torch.device
    seed: Optional[int]
    verbose: bool


def _as_tensor(value: Any, device: torch.device) -> torch.Tensor:
    if isinstance(value, torch.Tensor):
        return value.detach().to(device=device, dtype=torch.float32)
    return torch.as_tensor(np.asarray(value, dtype=np.float32), device=device)
