"""Per-iteration objective and error bookkeeping."""
from __future__ import annotations

import logging
import math
from typing import Callable, List, Optional

import numpy as np
import torch
from tqdm import tqdm

from .errors import NumericalAnomaly

logger = logging.getLogger(__name__)


def rmse(x: torch.Tensor, reference: torch.Tensor, roi: Optional[torch.Tensor] = None) -> float:
    """Root-mean-square error of ``x`` against ``reference`` inside ``roi``."""
    if roi is not None:
        x = x[roi]
        reference = reference[roi]
    if x.numel() == 0:
        return 0.0
    return float(torch.sqrt(torch.mean((x - reference) ** 2)))


class ConvergenceMonitor:
    """Records the objective (and the RMSE against a ground truth) per iteration.

    Parameters
    ----------
    iterations : int
        Number of outer iterations
    ground_truth : (Z, N, N) tensor, optional
        Exact phantom; enables the error trace
    roi : (Z, N, N) bool tensor, optional
        Voxels where the error is measured
    nan_policy : str
        ``'ignore'``, ``'warn'`` or ``'raise'`` on non-finite iterate/objective
    verbose : bool
        Show a tqdm progress bar with the latest values
    callback : callable, optional
        Called as ``callback(iteration, volume)`` after every record
    """

    def __init__(
        self,
        iterations: int,
        ground_truth: Optional[torch.Tensor] = None,
        roi: Optional[torch.Tensor] = None,
        nan_policy: str = "ignore",
        verbose: bool = False,
        callback: Optional[Callable[[int, torch.Tensor], None]] = None,
    ):
        self.objective = np.zeros(iterations, dtype=np.float64)
        self.error = None if ground_truth is None else np.zeros(iterations, dtype=np.float64)
        self.ground_truth = ground_truth
        self.roi = roi
        self.nan_policy = nan_policy
        self.callback = callback
        self._pbar = tqdm(total=iterations, leave=True, disable=not verbose)

    def record(self, iteration: int, volume: torch.Tensor, objective: float) -> None:
        self._check(iteration, volume, objective)
        self.objective[iteration] = objective
        postfix = {'obj': f"{objective:.4e}"}
        if self.error is not None:
            self.error[iteration] = rmse(volume, self.ground_truth, self.roi)
            postfix['rmse'] = f"{self.error[iteration]:.4f}"
            logger.debug("Iteration %d | RMSE %.4f | objective %f", iteration + 1, self.error[iteration], objective)
        else:
            logger.debug("Iteration %d | objective %f", iteration + 1, objective)
        self._pbar.set_postfix(postfix)
        self._pbar.update(1)
        if self.callback is not None:
            self.callback(iteration, volume)

    def _check(self, iteration: int, volume: torch.Tensor, objective: float) -> None:
        if self.nan_policy == "ignore":
            return
        bad: List[str] = []
        if not bool(torch.isfinite(volume).all()):
            bad.append("iterate")
        if not math.isfinite(objective):
            bad.append("objective")
        if not bad:
            return
        if self.nan_policy == "raise":
            raise NumericalAnomaly(iteration + 1, " and ".join(bad))
        logger.warning("Non-finite %s at iteration %d", " and ".join(bad), iteration + 1)

    def close(self) -> None:
        self._pbar.close()
