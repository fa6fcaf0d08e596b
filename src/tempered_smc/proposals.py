"""Gaussian proposal distributions and covariance helpers for the mutation step."""

from __future__ import annotations

import logging
from typing import Sequence, Tuple

import numpy as np
from scipy.linalg import solve_triangular
from scipy.special import logsumexp

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

_LOG_2PI = np.log(2.0 * np.pi)


def weighted_mean_and_cov(x: np.ndarray, weights: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Weighted mean and (uncorrected) weighted covariance of draws ``x`` (N, d)."""

    w = np.asarray(weights, dtype=np.float64)
    w = w / np.sum(w)
    mu = w @ x
    centered = x - mu
    cov = (centered * w[:, None]).T @ centered
    return mu, cov


def nearest_spd(A: np.ndarray, floor: float = 1e-12) -> np.ndarray:
    """Return the nearest symmetric positive definite matrix to ``A``.

    Matrices that already admit a Cholesky factorization are returned
    (symmetrized) unchanged; otherwise the eigenvalues are clamped to
    ``floor * max(1, max|lambda|)``.
    """

    A = np.atleast_2d(np.asarray(A, dtype=np.float64))
    B = 0.5 * (A + A.T)
    try:
        np.linalg.cholesky(B)
        return B
    except np.linalg.LinAlgError:
        pass

    w, V = np.linalg.eigh(B)  # w ascending
    w_floor = floor * max(1.0, float(np.max(np.abs(w))))
    logger.debug(
        "nearest_spd: clamping %d eigenvalue(s) below %.3e (min %.3e)",
        int(np.sum(w < w_floor)),
        w_floor,
        float(w[0]),
    )
    w = np.clip(w, w_floor, None)
    out = (V * w) @ V.T
    return 0.5 * (out + out.T)


class MvNormal:
    """Multivariate normal with a shared covariance.

    ``mean`` may be a single point (d,) or a batch of centers (N, d); the
    covariance (d, d) is shared across the batch.
    """

    def __init__(self, mean: np.ndarray, cov: np.ndarray):
        self.mean = np.asarray(mean, dtype=np.float64)
        self.cov = np.atleast_2d(np.asarray(cov, dtype=np.float64))
        self.dim = self.cov.shape[0]
        if self.mean.shape[-1] != self.dim:
            raise ValueError(
                f"mean has dimension {self.mean.shape[-1]}, covariance {self.dim}"
            )
        self.L = np.linalg.cholesky(self.cov)
        self.logdet = 2.0 * np.sum(np.log(np.diag(self.L)))

    def subset(self, idx: np.ndarray) -> "MvNormal":
        """Marginal over the coordinates ``idx``."""

        idx = np.asarray(idx)
        return MvNormal(self.mean[..., idx], self.cov[np.ix_(idx, idx)])

    def sample(self, rng: np.random.Generator, size=None) -> np.ndarray:
        shape = self.mean.shape if size is None else (size, self.dim)
        z = rng.standard_normal(size=shape)
        return self.mean + z @ self.L.T

    def log_density(self, x: np.ndarray) -> np.ndarray:
        diff = np.asarray(x, dtype=np.float64) - self.mean  # (..., d)
        z = solve_triangular(self.L, diff.T, lower=True)  # (d, ...)
        quad = np.sum(z**2, axis=0)
        return -0.5 * (self.dim * _LOG_2PI + self.logdet + quad)


class GaussianMixture:
    """Finite mixture of ``MvNormal`` components (row-wise when batched)."""

    def __init__(self, components: Sequence[MvNormal], weights: Sequence[float]):
        weights = np.asarray(weights, dtype=np.float64)
        if len(components) != weights.size:
            raise ValueError("one weight per component is required")
        if np.any(weights < 0.0) or not np.isclose(np.sum(weights), 1.0):
            raise ValueError(f"mixture weights must be a probability vector, got {weights}")
        self.components = list(components)
        self.weights = weights

    def sample(self, rng: np.random.Generator) -> np.ndarray:
        draws = np.stack([comp.sample(rng) for comp in self.components])  # (K, ..., d)
        batch_shape = draws.shape[1:-1]
        k = np.asarray(rng.choice(len(self.components), size=batch_shape, p=self.weights))
        return np.take_along_axis(draws, k[None, ..., None], axis=0)[0]

    def log_density(self, x: np.ndarray) -> np.ndarray:
        with np.errstate(divide="ignore"):
            log_w = np.log(self.weights)
        terms = np.stack(
            [lw + comp.log_density(x) for lw, comp in zip(log_w, self.components)]
        )  # (K, ...)
        return logsumexp(terms, axis=0)


def _mixture_around(center: np.ndarray, d_bar: MvNormal, cov: np.ndarray, alpha: float):
    d_full = MvNormal(center, cov)
    d_diag = MvNormal(center, np.diag(np.diag(cov)))
    d_ref = MvNormal(np.broadcast_to(d_bar.mean, center.shape), cov)
    return GaussianMixture([d_full, d_diag, d_ref], [alpha, (1.0 - alpha) / 2.0, (1.0 - alpha) / 2.0])


def mvnormal_mixture_draw(
    rng: np.random.Generator,
    theta_old: np.ndarray,  # (d,) or (N, d)
    d_prop: MvNormal,
    *,
    c: float = 1.0,
    alpha: float = 1.0,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Draw from the three-component proposal mixture around ``theta_old``.

    Components (all scaled by ``c**2``): full covariance centered at
    ``theta_old``, diagonal covariance centered at ``theta_old``, and full
    covariance centered at the reference mean of ``d_prop``; weights
    ``alpha, (1 - alpha) / 2, (1 - alpha) / 2``.

    Returns ``(theta_new, new_mix_density, old_mix_density)``: the draw, the
    log density of ``theta_new`` under the mixture around ``theta_old`` and the
    log density of ``theta_old`` under the mixture around ``theta_new``.
    """

    if not 0.0 <= alpha <= 1.0:
        raise ConfigurationError(f"mixing alpha must lie in [0, 1], got {alpha}")

    theta_old = np.asarray(theta_old, dtype=np.float64)
    cov = c**2 * d_prop.cov
    d_bar = MvNormal(d_prop.mean, cov)

    d_mix_old = _mixture_around(theta_old, d_bar, cov, alpha)
    theta_new = d_mix_old.sample(rng)

    d_mix_new = _mixture_around(theta_new, d_bar, cov, alpha)

    new_mix_density = d_mix_old.log_density(theta_new)
    old_mix_density = d_mix_new.log_density(theta_old)
    return theta_new, new_mix_density, old_mix_density


__all__ = [name for name in globals() if not name.startswith("_")]
