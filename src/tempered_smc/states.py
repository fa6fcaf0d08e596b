"""Shared dataclasses and constants for the particle cloud and its history."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Literal, Optional, Sequence

import numpy as np

from .errors import ConfigurationError
from .proposals import weighted_mean_and_cov

# Verbosity levels accepted by ``SMCConfig.verbose``.
VERBOSITY = {
    "none": 0,
    "low": 1,
    "high": 2,
}

RESAMPLING_METHODS = ("systematic", "multinomial")


@dataclass
class SMCConfig:
    """Sampler options.

    ``fixed_schedule`` is the list of candidate tempering exponents that
    bounds the adaptive schedule from above; when omitted it is generated
    from ``n_phi`` and ``lambda_bend``.
    """

    n_particles: int = 1000
    n_blocks: int = 1
    n_mh_steps: int = 1
    tempering_target_fraction: float = 0.97
    resampling_threshold: float = 0.5
    fixed_schedule: Optional[Sequence[float]] = None
    n_phi: int = 100
    lambda_bend: float = 2.0
    use_fixed_schedule: bool = False
    mixing_alpha: float = 0.9
    initial_scale_c: float = 0.5
    target_acceptance_rate: float = 0.25
    root_finder_xtol: float = 2e-12
    root_finder_maxiter: int = 100
    resampling_method: Literal["systematic", "multinomial"] = "systematic"
    max_init_attempts: int = 10
    n_workers: Optional[int] = None
    verbose: Literal["none", "low", "high"] = "low"
    progress: bool = True
    seed: Optional[int] = None

    def __post_init__(self):
        if self.n_particles < 2:
            raise ConfigurationError(f"n_particles must be >= 2, got {self.n_particles}")
        if self.n_blocks < 1:
            raise ConfigurationError(f"n_blocks must be >= 1, got {self.n_blocks}")
        if self.n_mh_steps < 1:
            raise ConfigurationError(f"n_mh_steps must be >= 1, got {self.n_mh_steps}")
        if not 0.0 < self.tempering_target_fraction < 1.0:
            raise ConfigurationError(
                "tempering_target_fraction must lie in (0, 1), "
                f"got {self.tempering_target_fraction}"
            )
        if not 0.0 <= self.resampling_threshold <= 1.0:
            raise ConfigurationError(
                f"resampling_threshold must lie in [0, 1], got {self.resampling_threshold}"
            )
        if not 0.0 <= self.mixing_alpha <= 1.0:
            raise ConfigurationError(
                f"mixing_alpha must lie in [0, 1], got {self.mixing_alpha}"
            )
        if self.initial_scale_c <= 0.0:
            raise ConfigurationError(
                f"initial_scale_c must be positive, got {self.initial_scale_c}"
            )
        if not 0.0 < self.target_acceptance_rate < 1.0:
            raise ConfigurationError(
                "target_acceptance_rate must lie in (0, 1), "
                f"got {self.target_acceptance_rate}"
            )
        if self.root_finder_xtol <= 0.0 or self.root_finder_maxiter < 1:
            raise ConfigurationError("root finder tolerance and iteration cap must be positive")
        if self.resampling_method not in RESAMPLING_METHODS:
            raise ConfigurationError(
                f"unknown resampling_method {self.resampling_method!r}; "
                f"expected one of {RESAMPLING_METHODS}"
            )
        if self.verbose not in VERBOSITY:
            raise ConfigurationError(f"unknown verbosity {self.verbose!r}")
        if self.fixed_schedule is None and self.n_phi < 2:
            raise ConfigurationError(f"n_phi must be >= 2, got {self.n_phi}")
        # validates the schedule shape eagerly
        self.candidate_schedule()

    def candidate_schedule(self) -> np.ndarray:
        """Return the fixed candidate exponents, leading zero removed."""

        if self.fixed_schedule is None:
            sched = np.linspace(0.0, 1.0, self.n_phi) ** self.lambda_bend
        else:
            sched = np.asarray(self.fixed_schedule, dtype=np.float64).ravel()
        sched = sched[sched > 0.0]
        if sched.size == 0 or sched[-1] != 1.0:
            raise ConfigurationError("fixed_schedule must end at 1.0")
        if np.any(np.diff(sched) <= 0.0):
            raise ConfigurationError("fixed_schedule must be strictly increasing")
        return sched

    @property
    def verbosity(self) -> int:
        return VERBOSITY[self.verbose]


@dataclass
class StageStats:
    """Diagnostics recorded once per completed stage."""

    stage: int
    phi: float
    ess: float
    resampled: bool
    log_mdd_increment: float
    acceptance_rate: float
    scale_c: float
    n_blocks: int
    elapsed: float = 0.0


@dataclass
class Cloud:
    """Particle population and its per-stage history.

    ``old_loglh`` holds each particle's log-likelihood under an earlier
    dataset when the cloud bridges from that posterior to a new one; the
    stage-n target is then ``logprior + (1 - phi) * old_loglh + phi * loglh``.
    """

    particles: np.ndarray  # (N, D)
    loglh: np.ndarray  # (N,)
    logprior: np.ndarray  # (N,)
    weights: np.ndarray  # (N,)
    tempering_schedule: List[float] = field(default_factory=lambda: [0.0])
    ess: List[float] = field(default_factory=list)
    log_mdd_increments: List[float] = field(default_factory=list)
    stages: List[StageStats] = field(default_factory=list)
    scale_c: float = 0.5
    resampled_last_period: bool = False
    old_loglh: Optional[np.ndarray] = None  # (N,)

    # ---- helpers ----
    @staticmethod
    def init(
        particles: np.ndarray,
        loglh: np.ndarray,
        logprior: np.ndarray,
        scale_c: float = 0.5,
    ) -> "Cloud":
        """Fresh cloud at phi = 0 with uniform weights."""

        particles = np.array(particles, dtype=np.float64, copy=True)
        N = particles.shape[0]
        return Cloud(
            particles=particles,
            loglh=np.array(loglh, dtype=np.float64, copy=True),
            logprior=np.array(logprior, dtype=np.float64, copy=True),
            weights=np.full(N, 1.0 / N),
            ess=[float(N)],
            scale_c=float(scale_c),
        )

    def __len__(self) -> int:
        return int(self.particles.shape[0])

    @property
    def n_particles(self) -> int:
        return len(self)

    @property
    def n_para(self) -> int:
        return int(self.particles.shape[1])

    @property
    def phi(self) -> float:
        return self.tempering_schedule[-1]

    @property
    def stage_index(self) -> int:
        return len(self.tempering_schedule) - 1

    @property
    def is_finished(self) -> bool:
        return self.tempering_schedule[-1] == 1.0 and len(self.stages) == self.stage_index

    @property
    def log_mdd(self) -> float:
        return float(np.sum(self.log_mdd_increments))

    @property
    def acceptance_rates(self) -> np.ndarray:
        return np.array([s.acceptance_rate for s in self.stages])

    def normalized_weights(self) -> np.ndarray:
        return self.weights / np.sum(self.weights)

    def weighted_mean(self) -> np.ndarray:
        return weighted_mean_and_cov(self.particles, self.weights)[0]

    def weighted_cov(self) -> np.ndarray:
        return weighted_mean_and_cov(self.particles, self.weights)[1]

    def record_stage(self, stats: StageStats):
        """Append one stage's diagnostics (driver only)."""

        self.stages.append(stats)

    def copy(self) -> "Cloud":
        return Cloud(
            particles=self.particles.copy(),
            loglh=self.loglh.copy(),
            logprior=self.logprior.copy(),
            weights=self.weights.copy(),
            tempering_schedule=list(self.tempering_schedule),
            ess=list(self.ess),
            log_mdd_increments=list(self.log_mdd_increments),
            stages=list(self.stages),
            scale_c=self.scale_c,
            resampled_last_period=self.resampled_last_period,
            old_loglh=None if self.old_loglh is None else self.old_loglh.copy(),
        )


__all__ = [name for name in globals() if not name.startswith("_")]
