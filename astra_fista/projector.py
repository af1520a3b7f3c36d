"""Projector / backprojector contract used by the reconstruction driver.

A projector maps a volume to a sinogram (``forward``) and back (``adjoint``)
for a given :class:`~astra_fista.geometry.ProjectionGeometry`. Two calling
conventions exist and are selected by the geometry tag:

* 2D tags (``parallel``, ``fanflat``, ``fanflat_vec``): one slice at a time,
  ``(N, N) -> (A, D)`` and ``(A, D) -> (N, N)``;
* 3D tags: the whole volume, ``(Z, N, N) -> (Z, A, D)`` and back.

:func:`forward_project` and :func:`back_project` hide that difference from the
driver. The ASTRA implementation is :class:`astra_fista.astra_backend.AstraProjector`.
"""
from __future__ import annotations

from abc import ABC, abstractmethod

import torch

from .geometry import ProjectionGeometry, VolumeGeometry


class Projector(ABC):
    """Linear forward operator and its adjoint."""

    def __init__(self, volume_geometry: VolumeGeometry):
        self.volume_geometry = volume_geometry

    @abstractmethod
    def forward(self, x: torch.Tensor, geometry: ProjectionGeometry) -> torch.Tensor:
        """Forward projection: volume (or slice) -> sinogram (or slice)."""

    @abstractmethod
    def adjoint(self, sino: torch.Tensor, geometry: ProjectionGeometry) -> torch.Tensor:
        """Backprojection: sinogram (or slice) -> volume (or slice)."""


def forward_project(projector: Projector, volume: torch.Tensor, geometry: ProjectionGeometry) -> torch.Tensor:
    """Project a ``(Z, N, N)`` volume into a ``(Z, A, D)`` sinogram."""
    if not geometry.kind.is_2d:
        return projector.forward(volume, geometry)
    slices = volume.shape[0]
    sino = torch.empty((slices, geometry.n_angles, geometry.det_cols), dtype=volume.dtype, device=volume.device)
    for k in range(slices):
        sino[k] = projector.forward(volume[k], geometry)
    return sino


def back_project(projector: Projector, sino: torch.Tensor, geometry: ProjectionGeometry) -> torch.Tensor:
    """Backproject a ``(Z, A, D)`` sinogram into a ``(Z, N, N)`` volume."""
    if not geometry.kind.is_2d:
        return projector.adjoint(sino, geometry)
    n = projector.volume_geometry.n
    vol = torch.empty((sino.shape[0], n, n), dtype=sino.dtype, device=sino.device)
    for k in range(sino.shape[0]):
        vol[k] = projector.adjoint(sino[k], geometry)
    return vol
