"""Model interface and batched evaluation of particles."""

from __future__ import annotations

import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol, Tuple, runtime_checkable

import numpy as np
import jax
import jax.numpy as jnp

logger = logging.getLogger(__name__)

BatchedEvaluator = Callable[[np.ndarray], Tuple[np.ndarray, np.ndarray]]


@runtime_checkable
class SMCModel(Protocol):
    """What the sampler needs from a model.

    ``free_para_inds`` lists the positions of the free parameters in the
    full vector of length ``n_para``; the remaining entries are held fixed.
    """

    n_para: int
    free_para_inds: np.ndarray

    def log_likelihood(self, theta: np.ndarray) -> float: ...

    def log_prior(self, theta: np.ndarray) -> float: ...

    def sample_prior(self, rng: np.random.Generator, n: int) -> np.ndarray: ...


@dataclass
class JaxModel:
    """Model built from JAX log densities; evaluated with ``jit(vmap(.))``.

    ``sample_prior_np(rng, n)`` must return an (n, n_para) array, fixed
    parameters included.

    JAX computes in float32 unless ``jax_enable_x64`` is set
    (``jax.config.update("jax_enable_x64", True)``), so particles are
    truncated on the way in; outputs are returned as float64. A warning is
    logged the first time the truncation changes a particle.
    """

    log_likelihood_jax: Callable[[jnp.ndarray], jnp.ndarray]
    log_prior_jax: Callable[[jnp.ndarray], jnp.ndarray]
    sample_prior_np: Callable[[np.random.Generator, int], np.ndarray]
    n_para: int
    free_para_inds: Optional[np.ndarray] = None
    _batched_ll: Callable = field(init=False, repr=False)
    _batched_lp: Callable = field(init=False, repr=False)
    _warned_precision: bool = field(default=False, init=False, repr=False)

    def __post_init__(self):
        if self.free_para_inds is None:
            self.free_para_inds = np.arange(self.n_para)
        self.free_para_inds = np.asarray(self.free_para_inds, dtype=np.int64)
        self._batched_ll = jax.jit(jax.vmap(self.log_likelihood_jax))
        self._batched_lp = jax.jit(jax.vmap(self.log_prior_jax))

    def log_likelihood(self, theta: np.ndarray) -> float:
        return float(self.log_likelihood_jax(jnp.asarray(theta)))

    def log_prior(self, theta: np.ndarray) -> float:
        return float(self.log_prior_jax(jnp.asarray(theta)))

    def sample_prior(self, rng: np.random.Generator, n: int) -> np.ndarray:
        return np.asarray(self.sample_prior_np(rng, n), dtype=np.float64)

    def evaluate_batch(self, thetas: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        thetas = np.asarray(thetas, dtype=np.float64)
        x = jnp.asarray(thetas)
        if not self._warned_precision and x.dtype != thetas.dtype:
            changed = (np.asarray(x, dtype=np.float64) != thetas) & np.isfinite(thetas)
            if changed.any():
                logger.warning(
                    "JAX is running in %s; particles lose precision on evaluation "
                    "(enable jax_enable_x64 for float64)",
                    x.dtype,
                )
                self._warned_precision = True
        ll = np.array(self._batched_ll(x), dtype=np.float64)
        lp = np.array(self._batched_lp(x), dtype=np.float64)
        return ll, lp


def _sanitize(loglh: np.ndarray, logprior: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    # outside the prior support the likelihood is irrelevant
    bad_prior = ~np.isfinite(logprior)
    loglh = np.where(bad_prior, -np.inf, loglh)
    n_nan = int(np.sum(np.isnan(loglh)))
    if n_nan:
        logger.warning("%d particle(s) returned a NaN log-likelihood; treated as -inf", n_nan)
        loglh = np.where(np.isnan(loglh), -np.inf, loglh)
    logprior = np.where(np.isnan(logprior), -np.inf, logprior)
    return loglh, logprior


def make_batched_evaluator(
    model: SMCModel,
    n_workers: Optional[int] = None,
    executor: Optional[Executor] = None,
) -> BatchedEvaluator:
    """Return ``evaluate(thetas (B, D)) -> (loglh (B,), logprior (B,))``.

    JAX models are evaluated in one compiled, vectorized call. Other models
    are mapped particle by particle, over ``executor`` when given, else over
    a thread pool of ``n_workers`` created here once and reused by every
    call; the likelihood is skipped where the prior is -inf. The caller owns
    ``executor`` and shuts it down.
    """

    if isinstance(model, JaxModel):

        def batched_jax(thetas: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
            ll, lp = model.evaluate_batch(thetas)
            return _sanitize(ll, lp)

        return batched_jax

    def _one(theta: np.ndarray) -> Tuple[float, float]:
        lp = float(model.log_prior(theta))
        if not np.isfinite(lp):
            return -np.inf, lp
        return float(model.log_likelihood(theta)), lp

    pool = executor
    if pool is None and n_workers is not None and n_workers > 1:
        pool = ThreadPoolExecutor(max_workers=n_workers, thread_name_prefix="smc-eval")

    def batched(thetas: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        thetas = np.asarray(thetas, dtype=np.float64)
        if pool is not None:
            out = list(pool.map(_one, thetas))
        else:
            out = [_one(theta) for theta in thetas]
        if not out:
            return np.zeros(0), np.zeros(0)
        ll, lp = (np.array(v, dtype=np.float64) for v in zip(*out))
        return _sanitize(ll, lp)

    return batched


__all__ = [name for name in globals() if not name.startswith("_")]
