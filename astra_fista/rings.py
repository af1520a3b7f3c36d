"""Ring-artifact offset vector for the Group-Huber fidelity."""
from __future__ import annotations

from typing import Tuple

import torch


def soft_threshold(x: torch.Tensor, threshold: float) -> torch.Tensor:
    """``sign(x) * max(|x| - threshold, 0)``."""
    return torch.sign(x) * torch.clamp(torch.abs(x) - threshold, min=0.0)


class RingTracker:
    """Per-detector, per-slice ring offset ``r`` with FISTA extrapolation.

    ``r`` is driven by the angle-summed Group-Huber residual, shrunk towards
    zero by soft-thresholding with ``lambda_r`` and extrapolated with the same
    momentum sequence as the image. With ``lambda_r == 0`` every method is a
    no-op and ``r`` stays zero.

    Parameters
    ----------
    shape : (Z, D)
        Slices and detector columns
    lambda_r : float
        L1 weight of the ring vector
    alpha : float
        Scaling of the offset subtracted from the measured sinogram
    """

    def __init__(self, shape: Tuple[int, int], lambda_r: float = 0.0, alpha: float = 1.0,
                 device=None, dtype=torch.float32):
        self.lambda_r = float(lambda_r)
        self.alpha = float(alpha)
        self.r = torch.zeros(shape, device=device, dtype=dtype)
        self.r_x = self.r.clone()
        self.r_old = self.r.clone()

    @property
    def active(self) -> bool:
        return self.lambda_r > 0

    def offset(self) -> torch.Tensor:
        """``alpha * r_x``, the offset removed from the measured sinogram."""
        return self.alpha * self.r_x

    def gradient_step(self, angle_sum: torch.Tensor, inv_L: float) -> None:
        """``r = r_x - inv_L * angle_sum``; the previous ``r`` becomes ``r_old``."""
        if not self.active:
            return
        self.r_old = self.r
        self.r = self.r_x - inv_L * angle_sum

    def hold(self) -> None:
        """Make the next extrapolation a zero step (``r_old = r``)."""
        self.r_old = self.r

    def shrink(self) -> None:
        if not self.active:
            return
        self.r = soft_threshold(self.r, self.lambda_r)

    def extrapolate(self, t_old: float, t: float) -> None:
        """``r_x = r + ((t_old - 1) / t) * (r - r_old)``."""
        if not self.active:
            return
        self.r_x = self.r + ((t_old - 1.0) / t) * (self.r - self.r_old)
