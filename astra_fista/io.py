"""HDF5 persistence of sinograms and reconstruction results.

A saved :class:`~astra_fista.fista.FISTAResult` holds everything needed to
resume a run: pass ``load_result(path).volume`` as ``FISTAConfig.initial`` and
``.lipschitz`` as ``FISTAConfig.lipschitz``.
"""
from __future__ import annotations

from typing import Optional, Tuple

import h5py
import numpy as np
import torch

from .fista import FISTAResult


def save_result(path: str, result: FISTAResult) -> None:
    """Write a reconstruction result to ``path`` (overwritten if present)."""
    with h5py.File(path, "w") as f:
        f.create_dataset("volume", data=result.volume.detach().cpu().numpy(), compression="gzip")
        f.create_dataset("objective", data=np.asarray(result.objective))
        if result.error is not None:
            f.create_dataset("error", data=np.asarray(result.error))
        if result.ring is not None:
            f.create_dataset("ring", data=result.ring.detach().cpu().numpy())
        f.attrs["lipschitz"] = float(result.lipschitz)


def load_result(path: str, device: Optional[torch.device] = None) -> FISTAResult:
    """Read a result written by :func:`save_result`."""
    device = device if device is not None else torch.device("cpu")
    with h5py.File(path, "r") as f:
        volume = torch.from_numpy(f["volume"][()]).to(torch.float32).to(device)
        objective = f["objective"][()]
        error = f["error"][()] if "error" in f else None
        ring = torch.from_numpy(f["ring"][()]).to(device) if "ring" in f else None
        lipschitz = float(f.attrs["lipschitz"])
    return FISTAResult(volume=volume, objective=objective, error=error, lipschitz=lipschitz, ring=ring)


def load_sinogram(
    path: str,
    sinogram_key: str = "sinogram",
    weights_key: Optional[str] = "weights",
    device: Optional[torch.device] = None,
) -> Tuple[torch.Tensor, Optional[torch.Tensor]]:
    """Read a ``(Z, A, D)`` sinogram and, if present, its weights from an HDF5 file."""
    device = device if device is not None else torch.device("cpu")
    with h5py.File(path, "r") as f:
        if sinogram_key not in f:
            raise KeyError(f"dataset '{sinogram_key}' not found in {path}")
        sino = torch.from_numpy(np.asarray(f[sinogram_key][()], dtype=np.float32)).to(device)
        weights = None
        if weights_key is not None and weights_key in f:
            weights = torch.from_numpy(np.asarray(f[weights_key][()], dtype=np.float32)).to(device)
    return sino, weights
