from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import numpy as np
from scipy.special import logsumexp
from tqdm.auto import tqdm

from .errors import ConfigurationError, SMCError
from .evaluation import BatchedEvaluator, SMCModel, make_batched_evaluator
from .mh_moves import adapt_scale, mutation
from .proposals import MvNormal, nearest_spd, weighted_mean_and_cov
from .resampling import resample
from .states import VERBOSITY, Cloud, SMCConfig, StageStats
from .tempering import (
    ScheduleCursor,
    incremental_log_weights,
    next_fixed_phi,
    normalize_log_weights,
    solve_adaptive_phi,
)

logger = logging.getLogger(__name__)


def initial_draw(
    rng: np.random.Generator,
    model: SMCModel,
    evaluate: BatchedEvaluator,
    n_particles: int,
    max_attempts: int = 10,
    scale_c: float = 0.5,
) -> Cloud:
    """Draw the phi = 0 cloud from the prior.

    Particles whose log-likelihood is not finite are redrawn, at most
    ``max_attempts`` times.
    """

    particles = np.asarray(model.sample_prior(rng, n_particles), dtype=np.float64)
    if particles.shape != (n_particles, model.n_para):
        raise SMCError(
            f"sample_prior returned shape {particles.shape}, "
            f"expected {(n_particles, model.n_para)}"
        )
    loglh, logprior = evaluate(particles)

    for attempt in range(max_attempts):
        bad = ~(np.isfinite(loglh) & np.isfinite(logprior))
        if not bad.any():
            break
        logger.debug("initial draw: redrawing %d particle(s) (attempt %d)", int(bad.sum()), attempt + 1)
        redraw = np.asarray(model.sample_prior(rng, int(bad.sum())), dtype=np.float64)
        ll_re, lp_re = evaluate(redraw)
        particles[bad] = redraw
        loglh[bad] = ll_re
        logprior[bad] = lp_re
    else:
        if not np.all(np.isfinite(loglh) & np.isfinite(logprior)):
            raise SMCError(
                f"could not draw {n_particles} particles with finite log-likelihood "
                f"in {max_attempts} attempts"
            )

    return Cloud.init(particles, loglh, logprior, scale_c=scale_c)


def correction(cloud: Cloud, phi_n: float, old_loglh: Optional[np.ndarray] = None):
    """Reweight the cloud to ``phi_n``.

    Returns ``(weights, ess, log_mdd_increment)``; the increment is
    ``log sum_i w_i * inc_i`` over the normalized previous weights, i.e.
    the log mean incremental weight when those are uniform.
    """

    inc = incremental_log_weights(cloud.loglh, phi_n, cloud.phi, old_loglh)
    with np.errstate(divide="ignore"):
        log_w_prev = np.log(cloud.normalized_weights())
    log_w = log_w_prev + inc
    weights = normalize_log_weights(log_w)
    log_mdd_increment = float(logsumexp(log_w))
    ess = float(1.0 / np.sum(weights**2))
    return weights, ess, log_mdd_increment


def selection(rng: np.random.Generator, cloud: Cloud, threshold: float, method: str = "systematic"):
    """Ancestor indices when the ESS fell below ``threshold * N``, else None."""

    N = len(cloud)
    if cloud.ess[-1] < threshold * N:
        return resample(rng, cloud.weights, method=method)
    return None


def marginal_data_density(cloud: Cloud) -> float:
    """Log marginal data density accumulated over the completed stages."""

    return cloud.log_mdd


def _validate_model(model: SMCModel, config: SMCConfig) -> np.ndarray:
    free_para_inds = np.asarray(model.free_para_inds, dtype=np.int64)
    n_free = free_para_inds.size
    if n_free == 0:
        raise ConfigurationError("model has no free parameters")
    if np.any(free_para_inds < 0) or np.any(free_para_inds >= model.n_para):
        raise ConfigurationError("free_para_inds out of range for n_para")
    if np.unique(free_para_inds).size != n_free:
        raise ConfigurationError("free_para_inds contains duplicates")
    if config.n_blocks > n_free:
        raise ConfigurationError(
            f"n_blocks={config.n_blocks} exceeds the number of free parameters ({n_free})"
        )
    return free_para_inds


def bridge_cloud(previous: Cloud, model: SMCModel) -> Cloud:
    """Start a tempered update from a finished posterior ``previous``.

    The particles and weights of ``previous`` are kept, ``model`` (the new
    data) is evaluated on them and their current log-likelihoods become
    ``old_loglh``. Running the result with ``run_smc(model, ...,
    old_model=<model of previous>)`` moves the cloud from the old posterior
    to the new one; its log MDD is then the log ratio of the two evidences.
    """

    if not previous.is_finished:
        raise SMCError("a tempered update needs a finished posterior cloud")
    if previous.n_para != model.n_para:
        raise ConfigurationError(
            f"cloud has {previous.n_para} parameters, model has {model.n_para}"
        )
    loglh, logprior = make_batched_evaluator(model)(previous.particles)
    weights = previous.normalized_weights()
    return Cloud(
        particles=previous.particles.copy(),
        loglh=loglh,
        logprior=logprior,
        weights=weights,
        ess=[float(1.0 / np.sum(weights**2))],
        scale_c=previous.scale_c,
        old_loglh=previous.loglh.copy(),
    )


def run_smc(
    model: SMCModel,
    config: Optional[SMCConfig] = None,
    *,
    cloud: Optional[Cloud] = None,
    rng: Optional[np.random.Generator] = None,
    old_model: Optional[SMCModel] = None,
) -> Cloud:
    """
    Tempered SMC from the prior (phi = 0) to the posterior (phi = 1).

    Each stage:
     - picks phi_n (adaptive root finding bounded by the fixed schedule, or
       the next fixed candidate),
     - reweights (correction) and accumulates the log marginal data density,
     - resamples when the ESS falls below threshold * N (selection),
     - runs blocked MH sweeps at phi_n and adapts the proposal scale (mutation).
    Passing an unfinished ``cloud`` resumes from its last completed stage.
    A cloud carrying ``old_loglh`` (see ``bridge_cloud``) is tempered from
    the old posterior instead of the prior and needs ``old_model``, whose
    log-likelihood is re-evaluated for every proposal.
    """

    config = SMCConfig() if config is None else config
    rng = np.random.default_rng(config.seed) if rng is None else rng
    free_para_inds = _validate_model(model, config)
    bridged = cloud is not None and cloud.old_loglh is not None
    if bridged and old_model is None:
        raise ConfigurationError("a cloud with old_loglh needs old_model")
    if old_model is not None:
        if not bridged:
            raise ConfigurationError("old_model is only used with a cloud carrying old_loglh")
        if old_model.n_para != model.n_para:
            raise ConfigurationError(
                f"old_model has {old_model.n_para} parameters, model has {model.n_para}"
            )

    pool = None
    if config.n_workers is not None and config.n_workers > 1:
        pool = ThreadPoolExecutor(max_workers=config.n_workers, thread_name_prefix="smc-eval")
    try:
        evaluate = make_batched_evaluator(model, executor=pool)
        evaluate_old = make_batched_evaluator(old_model, executor=pool) if bridged else None
        if cloud is None:
            cloud = initial_draw(
                rng,
                model,
                evaluate,
                config.n_particles,
                max_attempts=config.max_init_attempts,
                scale_c=config.initial_scale_c,
            )
        else:
            cloud = cloud.copy()
            if cloud.n_para != model.n_para:
                raise ConfigurationError(
                    f"cloud has {cloud.n_para} parameters, model has {model.n_para}"
                )
        return _run_stages(rng, cloud, config, free_para_inds, evaluate, evaluate_old)
    finally:
        if pool is not None:
            pool.shutdown()


def _run_stages(
    rng: np.random.Generator,
    cloud: Cloud,
    config: SMCConfig,
    free_para_inds: np.ndarray,
    evaluate: BatchedEvaluator,
    evaluate_old: Optional[BatchedEvaluator],
) -> Cloud:
    verbosity = config.verbosity
    cursor = ScheduleCursor(config.candidate_schedule())
    # skip candidates already consumed by a resumed cloud
    while cursor.phi_prop <= cloud.phi and not cursor.exhausted:
        cursor.advance()
    N = len(cloud)

    if verbosity >= VERBOSITY["low"]:
        logger.info(
            "starting SMC: %d particles, %d free parameters, %d block(s), %s schedule%s",
            N,
            free_para_inds.size,
            config.n_blocks,
            "fixed" if config.use_fixed_schedule else "adaptive",
            ", bridged from an old posterior" if evaluate_old is not None else "",
        )

    with tqdm(
        total=1.0,
        initial=cloud.phi,
        desc="SMC",
        unit="phi",
        disable=(not config.progress) or verbosity == VERBOSITY["none"],
    ) as pbar:
        while not cloud.is_finished:
            t0 = time.perf_counter()
            stage = cloud.stage_index + 1
            phi_n1 = cloud.phi

            # ----- choose phi_n -----
            if config.use_fixed_schedule:
                phi_n = next_fixed_phi(cloud, cursor)
            else:
                phi_n = solve_adaptive_phi(
                    cloud,
                    cursor,
                    config.tempering_target_fraction,
                    old_loglh=cloud.old_loglh,
                    xtol=config.root_finder_xtol,
                    maxiter=config.root_finder_maxiter,
                    stage=stage,
                )
            cloud.resampled_last_period = False

            # ----- correction -----
            weights, ess, log_mdd_inc = correction(cloud, phi_n, cloud.old_loglh)
            cloud.tempering_schedule.append(phi_n)
            cloud.weights = weights
            cloud.ess.append(ess)
            cloud.log_mdd_increments.append(log_mdd_inc)

            # ----- selection -----
            ancestors = selection(rng, cloud, config.resampling_threshold, config.resampling_method)
            resampled = ancestors is not None
            if resampled:
                cloud.particles = cloud.particles[ancestors]
                cloud.loglh = cloud.loglh[ancestors]
                cloud.logprior = cloud.logprior[ancestors]
                if cloud.old_loglh is not None:
                    cloud.old_loglh = cloud.old_loglh[ancestors]
                cloud.weights = np.full(N, 1.0 / N)
                cloud.resampled_last_period = True

            # ----- mutation -----
            mu, cov = weighted_mean_and_cov(cloud.particles[:, free_para_inds], cloud.weights)
            d_prop = MvNormal(mu, nearest_spd(cov))
            c = cloud.scale_c
            result = mutation(
                rng,
                evaluate,
                cloud.particles,
                cloud.loglh,
                cloud.logprior,
                phi_n,
                d_prop,
                free_para_inds=free_para_inds,
                n_blocks=config.n_blocks,
                n_mh_steps=config.n_mh_steps,
                c=c,
                alpha=config.mixing_alpha,
                log_blocks=verbosity >= VERBOSITY["high"],
                evaluate_old=evaluate_old,
                old_loglh=cloud.old_loglh,
            )
            cloud.particles = result.particles
            cloud.loglh = result.loglh
            cloud.logprior = result.logprior
            cloud.old_loglh = result.old_loglh
            accept_rate = result.acceptance_rate
            cloud.scale_c = adapt_scale(c, accept_rate, config.target_acceptance_rate)

            cloud.record_stage(
                StageStats(
                    stage=stage,
                    phi=phi_n,
                    ess=ess,
                    resampled=resampled,
                    log_mdd_increment=log_mdd_inc,
                    acceptance_rate=accept_rate,
                    scale_c=c,
                    n_blocks=config.n_blocks,
                    elapsed=time.perf_counter() - t0,
                )
            )

            if verbosity >= VERBOSITY["low"]:
                logger.info(
                    "stage %d: phi=%.6f ESS=%.1f%s accept=%.3f c=%.3f log MDD=%.4f",
                    stage,
                    phi_n,
                    ess,
                    " (resampled)" if resampled else "",
                    accept_rate,
                    c,
                    cloud.log_mdd,
                )
            pbar.update(phi_n - phi_n1)

    if verbosity >= VERBOSITY["low"]:
        logger.info(
            "SMC finished after %d stages; log marginal data density %.4f",
            cloud.stage_index,
            cloud.log_mdd,
        )
    return cloud


# Short alias
smc = run_smc
