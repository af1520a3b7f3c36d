"""Power-method estimate of the Lipschitz constant of ``F* W F``."""
from __future__ import annotations

import logging
from typing import Optional

import torch

from .geometry import ProjectionGeometry, VolumeGeometry
from .projector import Projector

logger = logging.getLogger(__name__)

# A 3D forward/backprojection pair is far more expensive than a 2D one.
POWER_ITERATIONS_2D = 15
POWER_ITERATIONS_3D = 8


def estimate_lipschitz(
    projector: Projector,
    geometry: ProjectionGeometry,
    volume_geometry: VolumeGeometry,
    weights: Optional[torch.Tensor] = None,
    n_iter: Optional[int] = None,
    generator: Optional[torch.Generator] = None,
    device: Optional[torch.device] = None,
) -> float:
    """Estimate the largest singular value of the weighted projector by power iteration.

    For 2D geometries a single representative slice is used (slice 0 of the
    weights), for 3D geometries the whole volume.

    Parameters
    ----------
    projector : Projector
        Forward/adjoint pair
    geometry : ProjectionGeometry
        Full projection geometry
    volume_geometry : VolumeGeometry
        Reconstruction grid
    weights : (Z, A, D) tensor, optional
        Statistical weights; all ones when omitted
    n_iter : int, optional
        Number of power iterations (15 for 2D tags, 8 for 3D tags by default)
    generator : torch.Generator, optional
        Random source for the starting field
    device : torch.device, optional
        Device of the starting field (defaults to the weights' device or CPU)

    Returns
    -------
    L : float
        Norm of the last un-normalised iterate.
    """
    two_d = geometry.kind.is_2d
    if n_iter is None:
        n_iter = POWER_ITERATIONS_2D if two_d else POWER_ITERATIONS_3D
    if device is None:
        device = weights.device if weights is not None else torch.device('cpu')

    shape = volume_geometry.slice_shape if two_d else volume_geometry.shape
    if generator is not None:
        x1 = torch.rand(shape, generator=generator, dtype=torch.float32, device=generator.device).to(device)
    else:
        x1 = torch.rand(shape, dtype=torch.float32, device=device)

    if weights is None:
        sqweight = None
    else:
        sqweight = torch.sqrt(weights[0] if two_d else weights)

    def _weighted_forward(x):
        y = projector.forward(x, geometry)
        return y if sqweight is None else sqweight * y

    logger.info("Calculating Lipschitz constant for '%s' beam geometry (%d power iterations)",
                geometry.kind.value, n_iter)
    s = 0.0
    y = _weighted_forward(x1)
    for _ in range(n_iter):
        x1 = projector.adjoint(y if sqweight is None else sqweight * y, geometry)
        s = float(torch.linalg.vector_norm(x1))
        if s == 0.0:
            break
        x1 = x1 / s
        y = _weighted_forward(x1)
    logger.debug("Estimated Lipschitz constant %.6g", s)
    return s
