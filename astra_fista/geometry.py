"""Volume and projection geometry descriptors.

The descriptors are plain dataclasses so that the driver, the subset planner
and the test doubles can use them without the ASTRA toolbox. Conversion to
ASTRA geometry dictionaries lives in :mod:`astra_fista.astra_backend`.

Layout
------
* volume: ``(Z, N, N)``, a single slice ``(N, N)``
* sinogram: ``(Z, A, D)`` i.e. (slices/detector rows, angles, detector cols)
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from .errors import ConfigurationError


class GeometryKind(Enum):
    """ASTRA projection geometry tags supported by the driver."""

    PARALLEL = "parallel"
    FANFLAT = "fanflat"
    FANFLAT_VEC = "fanflat_vec"
    CONE = "cone"
    PARALLEL3D = "parallel3d"
    PARALLEL3D_VEC = "parallel3d_vec"
    CONE_VEC = "cone_vec"

    @property
    def is_2d(self) -> bool:
        """True for tags that are projected slice by slice."""
        return self in (GeometryKind.PARALLEL, GeometryKind.FANFLAT, GeometryKind.FANFLAT_VEC)

    @property
    def is_vector(self) -> bool:
        return self.value.endswith("_vec")

    @classmethod
    def parse(cls, tag: Union[str, "GeometryKind"]) -> "GeometryKind":
        if isinstance(tag, cls):
            return tag
        try:
            return cls(str(tag).lower())
        except ValueError:
            valid = ", ".join(k.value for k in cls)
            raise ConfigurationError(
                f"No suitable geometry has been found for '{tag}'. Choose from: {valid}"
            ) from None


@dataclass(frozen=True)
class VolumeGeometry:
    """Reconstruction grid of ``slices`` slices of ``n x n`` voxels."""
    n: int
    slices: int = 1
    voxel_size_mm: float = 1.0

    @property
    def shape(self) -> Tuple[int, int, int]:
        return (self.slices, self.n, self.n)

    @property
    def slice_shape(self) -> Tuple[int, int]:
        return (self.n, self.n)


@dataclass(frozen=True)
class ProjectionGeometry:
    """Beam model plus the ordered sequence of views.

    For the ``*_vec`` tags ``vectors`` holds one ASTRA geometry row per view and
    ``angles`` (if omitted) defaults to the view positions, which is what the
    subset planner bins on.
    """
    kind: GeometryKind
    det_cols: int
    angles: np.ndarray = field(default=None)  # radians
    det_rows: int = 1
    det_spacing_x: float = 1.0
    det_spacing_y: float = 1.0
    source_origin: float = 0.0  # fan/cone only
    origin_det: float = 0.0  # fan/cone only
    vectors: Optional[np.ndarray] = None  # (V, 6) for fanflat_vec, (V, 12) for 3D vec

    def __post_init__(self):
        object.__setattr__(self, "kind", GeometryKind.parse(self.kind))
        if self.kind.is_vector:
            if self.vectors is None:
                raise ConfigurationError(f"'{self.kind.value}' geometry requires per-view vectors")
            vecs = np.asarray(self.vectors, dtype=np.float64)
            width = 6 if self.kind.is_2d else 12
            if vecs.ndim != 2 or vecs.shape[1] != width:
                raise ConfigurationError(
                    f"'{self.kind.value}' vectors must have shape (V, {width}), got {vecs.shape}"
                )
            object.__setattr__(self, "vectors", vecs)
            if self.angles is None:
                object.__setattr__(self, "angles", np.arange(vecs.shape[0], dtype=np.float64))
        if self.angles is None:
            raise ConfigurationError(f"'{self.kind.value}' geometry requires projection angles")
        angles = np.asarray(self.angles, dtype=np.float64).ravel()
        if angles.size == 0:
            raise ConfigurationError("projection geometry has no angles")
        if self.vectors is not None and self.vectors.shape[0] != angles.size:
            raise ConfigurationError("number of angles does not match number of geometry vectors")
        object.__setattr__(self, "angles", angles)
        if self.kind in (GeometryKind.FANFLAT, GeometryKind.CONE) and (
            self.source_origin <= 0 or self.origin_det < 0
        ):
            raise ConfigurationError(f"'{self.kind.value}' geometry requires source/detector distances")

    @property
    def n_angles(self) -> int:
        return int(self.angles.size)

    def sinogram_shape(self, slices: int) -> Tuple[int, int, int]:
        """Shape ``(Z, A, D)`` of the full sinogram for ``slices`` slices."""
        rows = slices if self.kind.is_2d else self.det_rows
        return (rows, self.n_angles, self.det_cols)

    def subset(self, indices: Sequence[int]) -> "ProjectionGeometry":
        """Same geometry restricted to the views at ``indices`` (in that order)."""
        idx = np.asarray(indices, dtype=np.int64)
        vectors = None if self.vectors is None else self.vectors[idx]
        return replace(self, angles=self.angles[idx], vectors=vectors)

    @classmethod
    def from_astra(cls, proj_geom: Mapping[str, Any]) -> "ProjectionGeometry":
        """Build a descriptor from an ASTRA projection geometry dictionary."""
        if 'type' not in proj_geom:
            raise ConfigurationError("ASTRA projection geometry has no 'type'")
        kind = GeometryKind.parse(proj_geom['type'])
        kwargs = dict(
            kind=kind,
            angles=proj_geom.get('ProjectionAngles'),
            vectors=proj_geom.get('Vectors'),
            source_origin=float(proj_geom.get('DistanceOriginSource', 0.0)),
            origin_det=float(proj_geom.get('DistanceOriginDetector', 0.0)),
        )
        if kind.is_2d:
            kwargs['det_cols'] = int(proj_geom['DetectorCount'])
            kwargs['det_spacing_x'] = float(proj_geom.get('DetectorWidth', 1.0))
        else:
            kwargs['det_cols'] = int(proj_geom['DetectorColCount'])
            kwargs['det_rows'] = int(proj_geom['DetectorRowCount'])
            kwargs['det_spacing_x'] = float(proj_geom.get('DetectorSpacingX', 1.0))
            kwargs['det_spacing_y'] = float(proj_geom.get('DetectorSpacingY', 1.0))
        return cls(**kwargs)


def volume_geometry_from_astra(vol_geom: Mapping[str, Any], slices: Optional[int] = None) -> VolumeGeometry:
    """Build a :class:`VolumeGeometry` from an ASTRA volume geometry dictionary.

    2D ASTRA geometries carry no slice count; ``slices`` (e.g. taken from the
    sinogram) fills it in.
    """
    if 'GridColCount' not in vol_geom:
        raise ConfigurationError("ASTRA volume geometry has no 'GridColCount'")
    n = int(vol_geom['GridColCount'])
    if int(vol_geom.get('GridRowCount', n)) != n:
        raise ConfigurationError("only square (N x N) reconstruction grids are supported")
    z = int(vol_geom.get('GridSliceCount', slices if slices is not None else 1))
    return VolumeGeometry(n=n, slices=z)
