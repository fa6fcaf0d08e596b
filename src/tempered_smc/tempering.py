"""Effective sample size and the adaptive tempering schedule solver."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.optimize import brentq

from .errors import DegenerateWeightsError, TemperingError
from .states import Cloud

logger = logging.getLogger(__name__)


def generate_fixed_schedule(n_phi: int, lambda_bend: float = 2.0) -> np.ndarray:
    """Bending schedule ``(i / (n_phi - 1)) ** lambda_bend``, i = 0..n_phi-1."""

    return np.linspace(0.0, 1.0, n_phi) ** lambda_bend


def incremental_log_weights(
    loglh: np.ndarray,
    phi_n: float,
    phi_n1: float,
    old_loglh: Optional[np.ndarray] = None,
) -> np.ndarray:
    if old_loglh is None:
        return (phi_n - phi_n1) * loglh
    return (phi_n1 - phi_n) * old_loglh + (phi_n - phi_n1) * loglh


def normalize_log_weights(log_w: np.ndarray) -> np.ndarray:
    """Normalized weights from unnormalized log weights (max-shifted)."""

    log_w = np.where(np.isnan(log_w), -np.inf, log_w)
    m = np.max(log_w)
    if not np.isfinite(m):
        raise DegenerateWeightsError(
            "all incremental weights are zero or non-finite; cannot normalize"
        )
    w = np.exp(log_w - m)
    return w / np.sum(w)


def compute_ess(
    loglh: np.ndarray,
    weights: np.ndarray,
    phi_n: float,
    phi_n1: float,
    old_loglh: Optional[np.ndarray] = None,
) -> float:
    """ESS of ``weights`` after reweighting from ``phi_n1`` to ``phi_n``.

    Ranges from 1 (one particle carries all weight) to N (uniform weights).
    """

    loglh = np.asarray(loglh, dtype=np.float64)
    with np.errstate(divide="ignore"):
        log_w = np.log(np.asarray(weights, dtype=np.float64))
    log_w = log_w + incremental_log_weights(loglh, phi_n, phi_n1, old_loglh)
    norm_weights = normalize_log_weights(log_w)
    return float(1.0 / np.sum(norm_weights**2))


@dataclass
class ScheduleCursor:
    """Position in the fixed candidate schedule; persists across stages.

    ``phi_prop`` is the current upper bound for the next exponent.
    """

    candidates: np.ndarray  # (n_phi,) strictly increasing, ends at 1
    j: int = 0

    @property
    def phi_prop(self) -> float:
        return float(self.candidates[self.j])

    @property
    def exhausted(self) -> bool:
        return self.j >= len(self.candidates) - 1

    def advance(self) -> float:
        self.j += 1
        return self.phi_prop


def ess_target(cloud: Cloud, tempering_target: float) -> float:
    """ESS the next stage aims for.

    Right after resampling the target is re-anchored to the full population.
    """

    if cloud.resampled_last_period:
        return tempering_target * len(cloud)
    return tempering_target * cloud.ess[-1]


def solve_adaptive_phi(
    cloud: Cloud,
    cursor: ScheduleCursor,
    tempering_target: float,
    *,
    old_loglh: Optional[np.ndarray] = None,
    xtol: float = 2e-12,
    maxiter: int = 100,
    stage: Optional[int] = None,
) -> float:
    """Choose the next tempering exponent.

    The ESS after reweighting to ``phi_n`` drops to ``tempering_target``
    times the previous ESS (or times N right after resampling), and
    ``phi_n`` never exceeds the first fixed-schedule candidate at which the
    ESS would already fall below that target. The cursor is advanced in
    place; the cloud is not modified.
    """

    phi_n1 = cloud.phi
    ESS_bar = ess_target(cloud, tempering_target)
    loglh, weights = cloud.loglh, cloud.weights

    def optimal_phi_function(phi: float) -> float:
        return compute_ess(loglh, weights, phi, phi_n1, old_loglh=old_loglh) - ESS_bar

    # single candidate: nothing to adapt
    if len(cursor.candidates) == 1:
        return 1.0

    # first candidate whose ESS already falls below target bounds the search
    while optimal_phi_function(cursor.phi_prop) >= 0 and not cursor.exhausted:
        cursor.advance()
    phi_prop = cursor.phi_prop

    if phi_prop != 1.0 or optimal_phi_function(phi_prop) < 0:
        try:
            phi_n = brentq(
                optimal_phi_function, phi_n1, phi_prop, xtol=xtol, maxiter=maxiter
            )
        except (RuntimeError, ValueError) as exc:
            raise TemperingError(
                f"root finding for the next tempering exponent failed: {exc}",
                bracket=(phi_n1, phi_prop),
                stage=stage,
            ) from exc
        logger.debug(
            "stage %s: phi_n=%.6g in [%.6g, %.6g], ESS target %.2f",
            stage,
            phi_n,
            phi_n1,
            phi_prop,
            ESS_bar,
        )
    else:
        phi_n = 1.0
    return float(phi_n)


def next_fixed_phi(cloud: Cloud, cursor: ScheduleCursor) -> float:
    """Next exponent when the fixed schedule is followed without adaptation."""

    while cursor.phi_prop <= cloud.phi and not cursor.exhausted:
        cursor.advance()
    phi_n = cursor.phi_prop
    if not cursor.exhausted:
        cursor.advance()
    return phi_n


__all__ = [name for name in globals() if not name.startswith("_")]
