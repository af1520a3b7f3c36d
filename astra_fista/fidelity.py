"""Data-fidelity terms.

Three mutually exclusive models are supported:

``LEAST_SQUARES``
    Penalised weighted least squares. The residual ``w * (Ax - b)`` is
    backprojected and the objective reports ``0.5 * ||residual||_2``.
``GROUP_HUBER``
    Ring-artifact aware fidelity: the measured sinogram is corrected by the
    per-detector offset ``alpha * r_x`` before forming the residual, and the
    angle-summed residual drives the ring vector update
    (see :mod:`astra_fista.rings`). Objective ``0.5 * sum(residual ** 2)``.
``STUDENT_T``
    Heavy-tailed robust fidelity. The weighted residual of each slice goes
    through :func:`student_t` whose gradient replaces the residual.

The norm-versus-squared-sum difference between the first two objectives is
kept as is.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple, Union

import numpy as np
import torch
from scipy.optimize import minimize_scalar

from .errors import ConfigurationError


class FidelityKind(Enum):
    LEAST_SQUARES = "LS"
    GROUP_HUBER = "group_huber"
    STUDENT_T = "students_data"

    @classmethod
    def resolve(cls, tag: Union[str, "FidelityKind", None], ring_lambda: float = 0.0) -> "FidelityKind":
        """Pick the fidelity model; a positive ring weight selects Group-Huber."""
        if ring_lambda > 0:
            return cls.GROUP_HUBER
        if tag is None:
            return cls.LEAST_SQUARES
        if isinstance(tag, cls):
            return tag
        aliases = {"ls": cls.LEAST_SQUARES, "pwls": cls.LEAST_SQUARES, "students_data": cls.STUDENT_T}
        kind = aliases.get(str(tag).lower())
        if kind is None:
            raise ConfigurationError(
                f"Unknown fidelity '{tag}'. Choose from: 'LS', 'PWLS', 'students_data'"
            )
        return kind


@dataclass
class FidelityResult:
    residual: torch.Tensor  # same shape as the sinogram block, to be backprojected
    objective: float
    ring_gradient: Optional[torch.Tensor] = None  # (Z, D) angle-summed residual, Group-Huber only


# ---------------------------------------------------------------------------
# Student-t robust loss
# ---------------------------------------------------------------------------

def _student_t_nll(log_s: float, r2: np.ndarray, dof: float) -> float:
    s2 = math.exp(2.0 * log_s)
    return r2.size * log_s + 0.5 * (dof + 1.0) * float(np.sum(np.log1p(r2 / (dof * s2))))


def student_t(
    residual: torch.Tensor,
    dof: float = 1.0,
    scale: Optional[float] = None,
) -> Tuple[float, torch.Tensor]:
    """Student-t misfit of a residual vector.

    Parameters
    ----------
    residual : (n,) tensor
        Vectorised residual
    dof : float
        Degrees of freedom ``k`` (``1`` is the Cauchy loss)
    scale : float, optional
        Scale ``s``; estimated by maximum likelihood when omitted

    Returns
    -------
    loss : float
        ``(k + 1) / 2 * sum(log(1 + r^2 / (k s^2)))``
    gradient : (n,) tensor
        ``(k + 1) * r / (k s^2 + r^2)``, same dtype/device as ``residual``
    """
    if dof <= 0:
        raise ValueError(f"degrees of freedom must be positive, got {dof}")
    r = residual.detach().double().cpu().numpy().ravel()
    r2 = r * r
    r_max = float(np.sqrt(r2.max())) if r.size else 0.0
    if r_max == 0.0:
        return 0.0, torch.zeros_like(residual)

    if scale is None:
        upper = math.log(r_max)
        res = minimize_scalar(_student_t_nll, bounds=(upper - 20.0, upper), args=(r2, dof), method='bounded')
        scale = math.exp(res.x)
    s2 = scale * scale

    loss = 0.5 * (dof + 1.0) * float(np.sum(np.log1p(r2 / (dof * s2))))
    grad = (dof + 1.0) * r / (dof * s2 + r2)
    return loss, torch.from_numpy(grad).to(dtype=residual.dtype, device=residual.device).reshape(residual.shape)


# ---------------------------------------------------------------------------
# Fidelity evaluation
# ---------------------------------------------------------------------------

def group_huber_residual(
    sino_updt: torch.Tensor,
    sino: torch.Tensor,
    weights: torch.Tensor,
    ring_offset: torch.Tensor,
) -> torch.Tensor:
    """``w * (sino_updt - (sino - ring_offset))`` with the ``(Z, D)`` offset broadcast over angles."""
    return weights * (sino_updt - (sino - ring_offset.unsqueeze(1)))


def evaluate_fidelity(
    kind: FidelityKind,
    sino_updt: torch.Tensor,
    sino: torch.Tensor,
    weights: torch.Tensor,
    ring_offset: Optional[torch.Tensor] = None,
    dof: float = 1.0,
) -> FidelityResult:
    """Residual to backproject and objective contribution for a sinogram block.

    Parameters
    ----------
    kind : FidelityKind
        Fidelity model
    sino_updt : (Z, a, D) tensor
        Forward projection of the current extrapolated iterate (all angles or a subset)
    sino, weights : (Z, a, D) tensors
        Measured data and weights for the same angles
    ring_offset : (Z, D) tensor, optional
        ``alpha_ring * r_x``; required for ``GROUP_HUBER``
    dof : float
        Student-t degrees of freedom
    """
    if kind is FidelityKind.GROUP_HUBER:
        if ring_offset is None:
            raise ConfigurationError("Group-Huber fidelity requires the ring offset")
        residual = group_huber_residual(sino_updt, sino, weights, ring_offset)
        objective = 0.5 * float(torch.sum(residual ** 2))
        return FidelityResult(residual, objective, ring_gradient=residual.sum(dim=1))

    residual = weights * (sino_updt - sino)

    if kind is FidelityKind.STUDENT_T:
        objective = 0.0
        gradient = torch.empty_like(residual)
        for k in range(residual.shape[0]):
            objective, gr = student_t(residual[k].reshape(-1), dof)
            gradient[k] = gr.reshape(residual.shape[1:])
        return FidelityResult(gradient, objective)

    if kind is FidelityKind.LEAST_SQUARES:
        return FidelityResult(residual, 0.5 * float(torch.linalg.vector_norm(residual)))

    raise ConfigurationError(f"Unsupported fidelity: {kind}")
