"""Regularisation (proximal) step between FISTA gradient updates.

Public API
----------
Penalty, DiffusionType:
    Tags of the supported penalties and of the nonlinear-diffusion edge function.

RegularisationSettings:
    Strengths and shared parameters of the penalties.

RegulariserBackend:
    Contract of the external denoiser service.

CCPiRegulariser:
    Backend calling the CCPi Regularisation Toolkit (``ccpi.filters.regularisers``).

apply_regularisation(...):
    Run every enabled penalty, in a fixed order, on the current iterate.

Notes
-----
* Enabled penalties are applied one after another to the output of the
  previous one (ROF-TV, FGP-TV, SB-TV, nonlinear diffusion, 4th-order
  diffusion, TGV). Each stage returns a new tensor.
* With ``dimension='2D'`` every slice is denoised independently; slices can be
  spread over a thread pool, results are stacked in slice order.
"""
from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple, Union

import numpy as np
import torch

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class Penalty(Enum):
    ROF_TV = "ROF_TV"
    FGP_TV = "FGP_TV"
    SB_TV = "SB_TV"
    DIFFUSION = "NDF"
    DIFFUSION_4TH = "Diff4th"
    TGV = "TGV"

    @property
    def is_tv(self) -> bool:
        """TV-family penalties report a TV energy to the objective."""
        return self in (Penalty.ROF_TV, Penalty.FGP_TV, Penalty.SB_TV)


PENALTY_ORDER = (
    Penalty.ROF_TV,
    Penalty.FGP_TV,
    Penalty.SB_TV,
    Penalty.DIFFUSION,
    Penalty.DIFFUSION_4TH,
    Penalty.TGV,
)


class DiffusionType(Enum):
    HUBER = "Huber"
    PERONA_MALIK = "PM"
    TUKEY = "Tukey"

    @property
    def code(self) -> int:
        """Penalty code understood by the CCPi ``NDF`` filter."""
        return {DiffusionType.HUBER: 1, DiffusionType.PERONA_MALIK: 2, DiffusionType.TUKEY: 3}[self]

    @classmethod
    def parse(cls, tag: Union[str, "DiffusionType"]) -> "DiffusionType":
        if isinstance(tag, cls):
            return tag
        for kind in cls:
            if kind.value == tag:
                return kind
        raise ConfigurationError("Please select appropriate diffusion type - Huber, PM or Tukey")


@dataclass
class RegularisationSettings:
    """Penalty strengths (0 disables a penalty) and their shared parameters."""
    rof_tv: float = 0.0
    fgp_tv: float = 0.0
    sb_tv: float = 0.0
    diffusion: float = 0.0
    diffusion_4th: float = 0.0
    tgv: float = 0.0
    device: str = "cpu"
    iterations: int = 25
    tolerance: float = 0.0
    time_step: float = 0.01
    sigma_edge: float = 0.01
    diffusion_type: Union[str, DiffusionType] = "Huber"
    dimension: str = "2D"
    tgv_alpha0: float = 1.0
    tgv_alpha1: float = 2.0
    tgv_lipschitz: float = 12.0
    workers: int = 1

    def strength(self, penalty: Penalty) -> float:
        return {
            Penalty.ROF_TV: self.rof_tv,
            Penalty.FGP_TV: self.fgp_tv,
            Penalty.SB_TV: self.sb_tv,
            Penalty.DIFFUSION: self.diffusion,
            Penalty.DIFFUSION_4TH: self.diffusion_4th,
            Penalty.TGV: self.tgv,
        }[penalty]

    def enabled(self) -> List[Tuple[Penalty, float]]:
        """Enabled penalties with their strengths, in application order."""
        return [(p, self.strength(p)) for p in PENALTY_ORDER if self.strength(p) > 0]

    def validate(self) -> "RegularisationSettings":
        """Check the tags once and return a copy with resolved enums."""
        device = str(self.device).lower()
        if device not in ("cpu", "gpu"):
            raise ConfigurationError(f"regularisation device must be 'cpu' or 'gpu', got '{self.device}'")
        dimension = str(self.dimension).upper()
        if dimension not in ("2D", "3D"):
            raise ConfigurationError(f"regularisation dimension must be '2D' or '3D', got '{self.dimension}'")
        if self.iterations < 0:
            raise ConfigurationError("number of regularisation iterations cannot be negative")
        if self.workers < 1:
            raise ConfigurationError("regularisation workers must be at least 1")
        for penalty in PENALTY_ORDER:
            if self.strength(penalty) < 0:
                raise ConfigurationError(f"{penalty.value} strength cannot be negative")
        diffusion_type = DiffusionType.parse(self.diffusion_type)
        return RegularisationSettings(**{
            **self.__dict__,
            "device": device,
            "dimension": dimension,
            "diffusion_type": diffusion_type,
        })


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

def total_variation(field: torch.Tensor) -> float:
    """Isotropic TV of a 2D slice or 3D volume (forward differences, Neumann boundary)."""
    grad_sq = torch.zeros_like(field)
    for dim in range(field.ndim):
        diff = torch.diff(field, dim=dim)
        pad = [0, 0] * field.ndim
        # F.pad order runs from the last dimension backwards
        pad[2 * (field.ndim - 1 - dim) + 1] = 1
        grad_sq = grad_sq + torch.nn.functional.pad(diff, pad) ** 2
    return float(torch.sqrt(grad_sq).sum())


class RegulariserBackend(ABC):
    """External proximal denoiser.

    ``denoise`` receives one 2D slice or one 3D volume and returns a new
    tensor of the same shape.
    """

    @abstractmethod
    def denoise(
        self,
        penalty: Penalty,
        field: torch.Tensor,
        strength: float,
        iterations: int,
        settings: RegularisationSettings,
    ) -> torch.Tensor:
        """Approximate proximal step of ``strength * penalty`` at ``field``."""

    def tv_energy(self, field: torch.Tensor, strength: float) -> float:
        """``strength * TV(field)`` for backends without an energy routine of their own."""
        return strength * total_variation(field)


class CCPiRegulariser(RegulariserBackend):
    """Backend using the CCPi Regularisation Toolkit.

    The toolkit is distributed through conda (``ccpi-regulariser``) and is
    imported when the backend is created.
    """

    def __init__(self, tv_method: int = 0, nonneg: int = 0):
        try:
            from ccpi.filters import regularisers  # type: ignore
        except ImportError as e:
            raise ImportError(
                "CCPi Regularisation Toolkit is required for CCPiRegulariser. "
                "Install it with: conda install -c ccpi ccpi-regulariser"
            ) from e
        self._lib = regularisers
        self.tv_method = tv_method  # 0 isotropic, 1 anisotropic
        self.nonneg = nonneg

    def denoise(self, penalty, field, strength, iterations, settings):
        data = np.ascontiguousarray(field.detach().cpu().numpy(), dtype=np.float32)
        lib = self._lib
        dev = settings.device
        tol = settings.tolerance
        if penalty is Penalty.ROF_TV:
            out = lib.ROF_TV(data, strength, iterations, settings.time_step, tol, device=dev)
        elif penalty is Penalty.FGP_TV:
            out = lib.FGP_TV(data, strength, iterations, tol, self.tv_method, self.nonneg, device=dev)
        elif penalty is Penalty.SB_TV:
            out = lib.SB_TV(data, strength, iterations, tol, self.tv_method, device=dev)
        elif penalty is Penalty.DIFFUSION:
            out = lib.NDF(data, strength, settings.sigma_edge, iterations, settings.time_step,
                          settings.diffusion_type.code, tol, device=dev)
        elif penalty is Penalty.DIFFUSION_4TH:
            out = lib.Diff4th(data, strength, settings.sigma_edge, iterations, settings.time_step, tol, device=dev)
        elif penalty is Penalty.TGV:
            out = lib.TGV(data, strength, settings.tgv_alpha1, settings.tgv_alpha0, iterations,
                          settings.tgv_lipschitz, tol, device=dev)
        else:
            raise ConfigurationError(f"Unsupported penalty: {penalty}")
        # older toolkit releases return (output, info)
        if isinstance(out, tuple):
            out = out[0]
        return torch.from_numpy(np.asarray(out, dtype=np.float32)).to(field.device)

    def tv_energy(self, field, strength):
        """Toolkit ``TV_ENERGY`` of ``field`` (type-2 functional, ``U0 = U``)."""
        data = np.ascontiguousarray(field.detach().cpu().numpy(), dtype=np.float32)
        energy = self._lib.TV_ENERGY(data, data, strength, 2)
        return float(np.asarray(energy).ravel()[0])


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _denoise_stage(
    backend: RegulariserBackend,
    penalty: Penalty,
    x: torch.Tensor,
    strength: float,
    iterations: int,
    settings: RegularisationSettings,
    executor: Optional[ThreadPoolExecutor],
) -> torch.Tensor:
    if settings.dimension == "3D":
        return backend.denoise(penalty, x, strength, iterations, settings)

    def _slice(field):
        return backend.denoise(penalty, field, strength, iterations, settings)

    if executor is None:
        slices = [_slice(field) for field in x.unbind(0)]
    else:
        slices = list(executor.map(_slice, x.unbind(0)))
    return torch.stack(slices, dim=0).to(dtype=x.dtype, device=x.device)


def apply_regularisation(
    x: torch.Tensor,
    settings: RegularisationSettings,
    backend: RegulariserBackend,
    inv_L: float,
    subsets: int = 1,
    executor: Optional[ThreadPoolExecutor] = None,
) -> Tuple[torch.Tensor, float]:
    """Apply the enabled penalties to the ``(Z, N, N)`` iterate.

    Parameters
    ----------
    x : (Z, N, N) tensor
        Iterate after the gradient step; not modified
    settings : RegularisationSettings
        Validated settings
    backend : RegulariserBackend
        Denoiser
    inv_L : float
        Gradient step size ``1 / L``; strengths are scaled by it
    subsets : int
        Number of ordered subsets; strength is divided by it and the iteration
        count becomes ``round(iterations / subsets)``
    executor : ThreadPoolExecutor, optional
        Pool for per-slice denoising in 2D mode

    Returns
    -------
    x : (Z, N, N) tensor
        Regularised iterate
    energy : float
        Sum of ``0.5 * TV energy`` of the TV-family stages
    """
    energy = 0.0
    iterations = settings.iterations if subsets <= 1 else round_half_up(settings.iterations / subsets)
    for penalty, lam in settings.enabled():
        strength = lam * inv_L / max(subsets, 1)
        x = _denoise_stage(backend, penalty, x, strength, iterations, settings, executor)
        if penalty.is_tv:
            energy += 0.5 * backend.tv_energy(x, strength)
    return x, energy
