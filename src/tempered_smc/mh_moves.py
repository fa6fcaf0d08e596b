"""Blocked Metropolis–Hastings mutation kernel and block helpers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from .errors import ConfigurationError
from .evaluation import BatchedEvaluator
from .proposals import MvNormal, mvnormal_mixture_draw

logger = logging.getLogger(__name__)


def generate_free_blocks(rng: np.random.Generator, n_free_para: int, n_blocks: int) -> List[np.ndarray]:
    """Randomly partition ``range(n_free_para)`` into ``n_blocks`` blocks.

    Blocks hold ``ceil(n_free_para / n_blocks)`` indices each, the last one
    takes the remainder. When that chunking would leave the last block
    empty the sizes are balanced instead (differing by at most one).
    """

    if n_blocks < 1 or n_blocks > n_free_para:
        raise ConfigurationError(
            f"need 1 <= n_blocks <= n_free_para, got n_blocks={n_blocks}, "
            f"n_free_para={n_free_para}"
        )
    rand_inds = rng.permutation(n_free_para)

    subset_length = -(-n_free_para // n_blocks)  # ceiling division
    last_block_length = n_free_para - subset_length * (n_blocks - 1)
    if last_block_length < 1:
        return np.array_split(rand_inds, n_blocks)

    blocks_free = []
    for i in range(n_blocks - 1):
        blocks_free.append(rand_inds[i * subset_length : (i + 1) * subset_length])
    blocks_free.append(rand_inds[n_free_para - last_block_length :])
    return blocks_free


def generate_all_blocks(blocks_free: Sequence[np.ndarray], free_para_inds: np.ndarray) -> List[np.ndarray]:
    """Map local free-parameter indices to positions in the full vector."""

    free_para_inds = np.asarray(free_para_inds)
    return [free_para_inds[np.asarray(block, dtype=np.int64)] for block in blocks_free]


def mh_accept_tempered_np(
    rng: np.random.Generator,
    ll_cur: np.ndarray,  # (N,)
    ll_prop: np.ndarray,  # (N,)
    lprior_cur: np.ndarray,  # (N,)
    lprior_prop: np.ndarray,  # (N,)
    phi: float,
    log_qcorr: np.ndarray,  # (N,) log q(old|new) - log q(new|old)
) -> np.ndarray:
    valid = np.isfinite(ll_prop) & np.isfinite(lprior_prop)
    with np.errstate(invalid="ignore"):
        delta = (lprior_prop - lprior_cur) + phi * (ll_prop - ll_cur) + log_qcorr
    delta = np.where(valid, delta, -np.inf)
    log_u = np.log(rng.random(ll_cur.shape))
    return log_u < delta


def adapt_scale(c: float, accept_rate: float, target: float) -> float:
    """Move the proposal scale toward the target acceptance rate."""

    x = 16.0 * (accept_rate - target)
    return float(c * (0.95 + 0.10 * np.exp(x) / (1.0 + np.exp(x))))


@dataclass
class MutationResult:
    particles: np.ndarray  # (N, D)
    loglh: np.ndarray  # (N,)
    logprior: np.ndarray  # (N,)
    n_accepted: np.ndarray  # (N,) accepted block moves per particle
    n_proposed: int  # block moves proposed per particle
    old_loglh: Optional[np.ndarray] = None  # (N,) when bridging

    @property
    def acceptance_rate(self) -> float:
        return float(np.mean(self.n_accepted) / self.n_proposed)


def mutation(
    rng: np.random.Generator,
    evaluate: BatchedEvaluator,
    particles: np.ndarray,  # (N, D)
    loglh: np.ndarray,  # (N,)
    logprior: np.ndarray,  # (N,)
    phi_n: float,
    d_prop: MvNormal,
    *,
    free_para_inds: np.ndarray,
    n_blocks: int = 1,
    n_mh_steps: int = 1,
    c: float = 1.0,
    alpha: float = 1.0,
    log_blocks: bool = False,
    evaluate_old: Optional[BatchedEvaluator] = None,
    old_loglh: Optional[np.ndarray] = None,
) -> MutationResult:
    """Blocked MH sweep(s) of every particle at tempering level ``phi_n``.

    ``d_prop`` is the reference distribution over the free parameters
    (weighted mean, regularized covariance). Each step draws a fresh random
    block partition shared by all particles; blocks are visited in order and
    each block conditions on the values accepted for earlier blocks in the
    same step. Particles are moved in parallel as rows of one array.

    With ``evaluate_old`` and ``old_loglh`` the kernel targets the bridge
    ``logprior + (1 - phi_n) * old_loglh + phi_n * loglh``; only the
    log-likelihood of ``evaluate_old`` is used.
    """

    if not 0.0 <= alpha <= 1.0:
        raise ConfigurationError(f"mixing alpha must lie in [0, 1], got {alpha}")
    bridged = evaluate_old is not None
    if bridged and old_loglh is None:
        raise ConfigurationError("evaluate_old requires the current old_loglh")

    free_para_inds = np.asarray(free_para_inds, dtype=np.int64)
    X = np.array(particles, dtype=np.float64, copy=True)
    ll_cur = np.array(loglh, dtype=np.float64, copy=True)
    lp_cur = np.array(logprior, dtype=np.float64, copy=True)
    old_cur = np.array(old_loglh, dtype=np.float64, copy=True) if bridged else None
    w_old = 1.0 - phi_n
    N = X.shape[0]
    n_accepted = np.zeros(N, dtype=np.int64)

    for step in range(n_mh_steps):
        blocks_free = generate_free_blocks(rng, free_para_inds.size, n_blocks)
        blocks_all = generate_all_blocks(blocks_free, free_para_inds)

        for b, (block_f, block_a) in enumerate(zip(blocks_free, blocks_all)):
            d_block = d_prop.subset(block_f)
            theta_new_block, new_mix_density, old_mix_density = mvnormal_mixture_draw(
                rng, X[:, block_a], d_block, c=c, alpha=alpha
            )

            X_prop = X.copy()
            X_prop[:, block_a] = theta_new_block
            ll_prop, lp_prop = evaluate(X_prop)
            tgt_cur, tgt_prop = lp_cur, lp_prop
            if bridged:
                old_prop, _ = evaluate_old(X_prop)
                if w_old > 0.0:
                    with np.errstate(invalid="ignore"):
                        tgt_cur = lp_cur + w_old * old_cur
                        tgt_prop = lp_prop + w_old * old_prop

            accept = mh_accept_tempered_np(
                rng,
                ll_cur,
                ll_prop,
                tgt_cur,
                tgt_prop,
                phi_n,
                old_mix_density - new_mix_density,
            )
            X = np.where(accept[:, None], X_prop, X)
            ll_cur = np.where(accept, ll_prop, ll_cur)
            lp_cur = np.where(accept, lp_prop, lp_cur)
            if bridged:
                old_cur = np.where(accept, old_prop, old_cur)
            n_accepted += accept

            if log_blocks:
                logger.debug(
                    "mh step %d block %d (size %d): acceptance %.3f",
                    step,
                    b,
                    block_f.size,
                    float(np.mean(accept)),
                )

    return MutationResult(
        particles=X,
        loglh=ll_cur,
        logprior=lp_cur,
        n_accepted=n_accepted,
        n_proposed=n_mh_steps * n_blocks,
        old_loglh=old_cur,
    )


__all__ = [name for name in globals() if not name.startswith("_")]
