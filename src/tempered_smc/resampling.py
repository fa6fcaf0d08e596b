"""Particle resampling schemes.

All schemes return ancestor indices drawn from **normalized** weights.
"""

from __future__ import annotations

from typing import Optional

import numpy as np

from .errors import ConfigurationError


def _searchsorted_cumsum(weights: np.ndarray, u: np.ndarray) -> np.ndarray:
    cumsum = np.cumsum(weights)
    cumsum[-1] = 1.0  # guard against round-off in the last bin
    idx = np.searchsorted(cumsum, u, side="right")
    return np.minimum(idx, weights.shape[0] - 1)


def systematic_resample(rng: np.random.Generator, weights: np.ndarray, n: int) -> np.ndarray:
    """One uniform offset, ``n`` evenly spaced points."""

    u = (rng.random() + np.arange(n)) / n
    return _searchsorted_cumsum(np.asarray(weights, dtype=np.float64), u)


def multinomial_resample(rng: np.random.Generator, weights: np.ndarray, n: int) -> np.ndarray:
    """``n`` independent categorical draws."""

    u = np.sort(rng.random(n))
    return _searchsorted_cumsum(np.asarray(weights, dtype=np.float64), u)


RESAMPLERS = {
    "systematic": systematic_resample,
    "multinomial": multinomial_resample,
}


def resample(
    rng: np.random.Generator,
    weights: np.ndarray,
    method: str = "systematic",
    n: Optional[int] = None,
) -> np.ndarray:
    """Ancestor indices for ``n`` (default: all) particles."""

    try:
        fn = RESAMPLERS[method]
    except KeyError:
        raise ConfigurationError(
            f"unknown resampling method {method!r}; expected one of {tuple(RESAMPLERS)}"
        ) from None
    w = np.asarray(weights, dtype=np.float64)
    w = w / np.sum(w)
    return fn(rng, w, w.shape[0] if n is None else n)


__all__ = [name for name in globals() if not name.startswith("_")]
