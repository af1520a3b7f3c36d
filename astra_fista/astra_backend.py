"""ASTRA toolbox backend.

Public API
----------
AstraProjector:
    :class:`~astra_fista.projector.Projector` running ASTRA CUDA forward and
    backprojection (``FP_CUDA``/``BP_CUDA`` for 2D tags, ``FP3D_CUDA``/``BP3D_CUDA``
    for 3D tags).

create_astra_geometries(...):
    Build ASTRA volume and projection geometry dictionaries.

sirt_warm_start(...):
    SIRT reconstruction used to warm-start FISTA.

Notes
-----
* Requires the ASTRA toolbox compiled with CUDA support.
* Every ASTRA data object and algorithm created here is deleted before the call
  returns, on success and on failure.
"""
from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np
import torch

try:
    import astra  # type: ignore
except ImportError as e:  # pragma: no cover
    raise ImportError("astra toolbox is required for astra_fista.astra_backend module") from e

from .geometry import GeometryKind, ProjectionGeometry, VolumeGeometry
from .projector import Projector

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Geometry setup helpers
# ---------------------------------------------------------------------------

def _make_volume_geom(volume_geometry: VolumeGeometry, two_d: bool):
    """Create an ASTRA volume geometry centred on the origin.

    The grid is ``n x n`` (2D) or ``slices x n x n`` (3D, ASTRA order ``Z, Y, X``)
    with physical extent scaled by the voxel size.
    """
    n = volume_geometry.n
    voxel = volume_geometry.voxel_size_mm
    if two_d:
        vol_geom = astra.create_vol_geom(n, n)
    else:
        vol_geom = astra.create_vol_geom(n, n, volume_geometry.slices)
    vol_geom.setdefault('option', {})
    vol_geom['option']['WindowMinX'] = -n * voxel / 2.0
    vol_geom['option']['WindowMaxX'] = n * voxel / 2.0
    vol_geom['option']['WindowMinY'] = -n * voxel / 2.0
    vol_geom['option']['WindowMaxY'] = n * voxel / 2.0
    if not two_d:
        vol_geom['option']['WindowMinZ'] = -volume_geometry.slices * voxel / 2.0
        vol_geom['option']['WindowMaxZ'] = volume_geometry.slices * voxel / 2.0
    return vol_geom


def _make_proj_geom(geometry: ProjectionGeometry):
    kind = geometry.kind
    if kind is GeometryKind.PARALLEL:
        return astra.create_proj_geom('parallel', geometry.det_spacing_x, geometry.det_cols, geometry.angles)
    if kind is GeometryKind.FANFLAT:
        return astra.create_proj_geom(
            'fanflat', geometry.det_spacing_x, geometry.det_cols, geometry.angles,
            geometry.source_origin, geometry.origin_det,
        )
    if kind is GeometryKind.FANFLAT_VEC:
        return astra.create_proj_geom('fanflat_vec', geometry.det_cols, geometry.vectors)
    if kind is GeometryKind.PARALLEL3D:
        return astra.create_proj_geom(
            'parallel3d', geometry.det_spacing_x, geometry.det_spacing_y,
            geometry.det_rows, geometry.det_cols, geometry.angles,
        )
    if kind is GeometryKind.CONE:
        return astra.create_proj_geom(
            'cone', geometry.det_spacing_x, geometry.det_spacing_y,
            geometry.det_rows, geometry.det_cols, geometry.angles,
            geometry.source_origin, geometry.origin_det,
        )
    # parallel3d_vec / cone_vec
    return astra.create_proj_geom(kind.value, geometry.det_rows, geometry.det_cols, geometry.vectors)


def create_astra_geometries(
    volume_geometry: VolumeGeometry,
    geometry: ProjectionGeometry,
) -> Tuple[dict, dict]:
    """Create ASTRA geometries.

    Returns
    -------
    vol_geom : dict
        ASTRA volume geometry (2D for 2D tags, 3D otherwise)
    proj_geom : dict
        ASTRA projection geometry
    """
    two_d = geometry.kind.is_2d
    return _make_volume_geom(volume_geometry, two_d), _make_proj_geom(geometry)


def _run_algorithm(alg_type: str, data_module, vol_geom, vol_t, proj_geom, sino_t, iterations: int = 1):
    """Link the buffers, run one ASTRA algorithm and release every id."""
    vol_id = sino_id = alg_id = None
    try:
        vol_id = data_module.link('-vol', vol_geom, vol_t)
        sino_id = data_module.link('-sino', proj_geom, sino_t)
        cfg = astra.astra_dict(alg_type)
        if alg_type.startswith('FP'):
            cfg['VolumeDataId'] = vol_id
        else:
            cfg['ReconstructionDataId'] = vol_id
        cfg['ProjectionDataId'] = sino_id
        alg_id = astra.algorithm.create(cfg)
        astra.algorithm.run(alg_id, iterations)
    finally:
        if alg_id is not None:
            astra.algorithm.delete(alg_id)
        if sino_id is not None:
            data_module.delete(sino_id)
        if vol_id is not None:
            data_module.delete(vol_id)


# ---------------------------------------------------------------------------
# Projector
# ---------------------------------------------------------------------------

class AstraProjector(Projector):
    """ASTRA CUDA forward/adjoint operator.

    Geometry dictionaries are cached per view selection so that ordered-subset
    iterations do not rebuild them every sub-iteration.
    """

    def __init__(self, volume_geometry: VolumeGeometry):
        super().__init__(volume_geometry)
        self._cache = {}

    def _geometries(self, geometry: ProjectionGeometry):
        key = (geometry.kind, geometry.angles.tobytes(),
               None if geometry.vectors is None else geometry.vectors.tobytes())
        geoms = self._cache.get(key)
        if geoms is None:
            geoms = create_astra_geometries(self.volume_geometry, geometry)
            self._cache[key] = geoms
        return geoms

    def forward(self, x: torch.Tensor, geometry: ProjectionGeometry) -> torch.Tensor:
        vol_geom, proj_geom = self._geometries(geometry)
        x = x.detach().to(torch.float32).contiguous()
        if geometry.kind.is_2d:
            out = torch.zeros((geometry.n_angles, geometry.det_cols), device=x.device, dtype=torch.float32)
            _run_algorithm('FP_CUDA', astra.data2d, vol_geom, x, proj_geom, out)
        else:
            out = torch.zeros((geometry.det_rows, geometry.n_angles, geometry.det_cols), device=x.device, dtype=torch.float32)
            _run_algorithm('FP3D_CUDA', astra.data3d, vol_geom, x, proj_geom, out)
        return out

    def adjoint(self, sino: torch.Tensor, geometry: ProjectionGeometry) -> torch.Tensor:
        vol_geom, proj_geom = self._geometries(geometry)
        sino = sino.detach().to(torch.float32).contiguous()
        if geometry.kind.is_2d:
            out = torch.zeros(self.volume_geometry.slice_shape, device=sino.device, dtype=torch.float32)
            _run_algorithm('BP_CUDA', astra.data2d, vol_geom, out, proj_geom, sino)
        else:
            out = torch.zeros(self.volume_geometry.shape, device=sino.device, dtype=torch.float32)
            _run_algorithm('BP3D_CUDA', astra.data3d, vol_geom, out, proj_geom, sino)
        return out


# ---------------------------------------------------------------------------
# SIRT warm start
# ---------------------------------------------------------------------------

def sirt_warm_start(
    sinogram: torch.Tensor,
    geometry: ProjectionGeometry,
    volume_geometry: VolumeGeometry,
    num_iterations: int = 100,
    min_constraint: Optional[float] = 0.0,
    max_constraint: Optional[float] = None,
    device: Optional[torch.device] = None,
) -> torch.Tensor:
    """Run ASTRA SIRT to obtain an initial volume for FISTA.

    Parameters
    ----------
    sinogram : (Z, A, D) tensor
        Measured sinogram (CPU or CUDA)
    geometry : ProjectionGeometry
        Projection geometry; 2D tags are reconstructed slice by slice with
        ``SIRT_CUDA``, 3D tags in one ``SIRT3D_CUDA`` run
    volume_geometry : VolumeGeometry
        Reconstruction grid
    num_iterations : int
        Number of SIRT iterations
    min_constraint, max_constraint : float, optional
        Box constraints passed to ASTRA; ``None`` disables them
    device : torch.device, optional
        Target device (defaults to the sinogram's)

    Returns
    -------
    vol : (Z, N, N) float32 tensor on device
    """
    if device is None:
        device = sinogram.device if isinstance(sinogram, torch.Tensor) else torch.device('cpu')
    sino_np = torch.as_tensor(sinogram).detach().cpu().numpy().astype(np.float32)
    vol_geom, proj_geom = create_astra_geometries(volume_geometry, geometry)

    options = {}
    if min_constraint is not None:
        options['MinConstraint'] = float(min_constraint)
    if max_constraint is not None:
        options['MaxConstraint'] = float(max_constraint)

    def _sirt(data_module, alg_type, sino_block):
        # SIRT needs ASTRA-managed buffers (create, not link).
        vol_id = proj_id = alg_id = None
        try:
            vol_id = data_module.create('-vol', vol_geom)
            proj_id = data_module.create('-sino', proj_geom, sino_block)
            cfg = astra.astra_dict(alg_type)
            cfg['ProjectionDataId'] = proj_id
            cfg['ReconstructionDataId'] = vol_id
            if options:
                cfg['option'] = dict(options)
            alg_id = astra.algorithm.create(cfg)
            astra.algorithm.run(alg_id, num_iterations)
            return data_module.get(vol_id)
        finally:
            if alg_id is not None:
                astra.algorithm.delete(alg_id)
            if proj_id is not None:
                data_module.delete(proj_id)
            if vol_id is not None:
                data_module.delete(vol_id)

    logger.info("SIRT warm start: %d iterations on '%s' geometry", num_iterations, geometry.kind.value)
    if geometry.kind.is_2d:
        vol_rec = np.stack([_sirt(astra.data2d, 'SIRT_CUDA', sino_np[k]) for k in range(sino_np.shape[0])])
    else:
        vol_rec = _sirt(astra.data3d, 'SIRT3D_CUDA', sino_np)

    return torch.from_numpy(np.ascontiguousarray(vol_rec)).to(torch.float32).to(device)
