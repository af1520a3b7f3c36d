"""Test configuration and fixtures."""

import pytest
import numpy as np
import torch

from astra_fista.geometry import VolumeGeometry

from doubles import RowSelectProjector, row_geometry


@pytest.fixture
def device():
    """Get available device (CUDA if available, else CPU)."""
    return torch.device("cuda" if torch.cuda.is_available() else "cpu")


@pytest.fixture
def small_problem():
    """4x4x1 identity-stub problem: geometry, volume geometry, projector, sinogram."""
    n = 4
    geometry = row_geometry(n)
    vol = VolumeGeometry(n=n, slices=1)
    projector = RowSelectProjector(vol, geometry.angles)
    rng = np.random.default_rng(0)
    sino = torch.from_numpy(rng.uniform(0.0, 1.0, size=(1, n, n)).astype(np.float32))
    return geometry, vol, projector, sino


@pytest.fixture
def uniform_angles():
    """Half-circle acquisition with 180 views."""
    return np.linspace(0, np.pi, 180, endpoint=False)
