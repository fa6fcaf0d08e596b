"""Shared test helpers (non-fixtures).

For fixtures, see conftest.py.
"""

import numpy as np
import jax.numpy as jnp
from jax.scipy.stats import multivariate_normal as jmvn

from tempered_smc import JaxModel


def gaussian_posterior(m0, S0, y, Sy):
    """Analytic posterior and log evidence for a Gaussian prior and likelihood."""
    P0 = np.linalg.inv(S0)
    Py = np.linalg.inv(Sy)
    cov = np.linalg.inv(P0 + Py)
    mean = cov @ (P0 @ m0 + Py @ y)
    S = S0 + Sy
    diff = y - m0
    _, logdet = np.linalg.slogdet(S)
    log_evidence = -0.5 * (len(y) * np.log(2 * np.pi) + logdet + diff @ np.linalg.solve(S, diff))
    return mean, cov, log_evidence


def make_gaussian_model(m0, S0, y, Sy, free_para_inds=None, n_para=None, fixed_values=None):
    """JaxModel with Gaussian prior and likelihood on the free entries."""
    m0, S0, y, Sy = (np.asarray(a, dtype=np.float64) for a in (m0, S0, y, Sy))
    d = m0.shape[0]
    n_para = d if n_para is None else n_para
    free = np.arange(d) if free_para_inds is None else np.asarray(free_para_inds)
    fixed_values = {} if fixed_values is None else fixed_values
    free_j = jnp.asarray(free)

    def log_likelihood(theta):
        return jmvn.logpdf(theta[free_j], jnp.asarray(y), jnp.asarray(Sy))

    def log_prior(theta):
        return jmvn.logpdf(theta[free_j], jnp.asarray(m0), jnp.asarray(S0))

    def sample_prior(rng, n):
        out = np.zeros((n, n_para))
        out[:, free] = rng.multivariate_normal(m0, S0, size=n)
        for k, v in fixed_values.items():
            out[:, k] = v
        return out

    return JaxModel(
        log_likelihood_jax=log_likelihood,
        log_prior_jax=log_prior,
        sample_prior_np=sample_prior,
        n_para=n_para,
        free_para_inds=free,
    )


class NumpyGaussianModel:
    """Plain-Python model evaluated particle by particle."""

    def __init__(self, m0, S0, y, Sy):
        self.m0, self.S0, self.y, self.Sy = (np.asarray(a, dtype=np.float64) for a in (m0, S0, y, Sy))
        self.n_para = self.m0.shape[0]
        self.free_para_inds = np.arange(self.n_para)

    @staticmethod
    def _logpdf(x, mean, cov):
        diff = x - mean
        _, logdet = np.linalg.slogdet(cov)
        return -0.5 * (len(x) * np.log(2 * np.pi) + logdet + diff @ np.linalg.solve(cov, diff))

    def log_likelihood(self, theta):
        return self._logpdf(theta, self.y, self.Sy)

    def log_prior(self, theta):
        return self._logpdf(theta, self.m0, self.S0)

    def sample_prior(self, rng, n):
        return rng.multivariate_normal(self.m0, self.S0, size=n)




def make_two_observation_model(m0, S0, y1, Sy1, y2, Sy2):
    """JaxModel whose likelihood combines two independent Gaussian observations."""
    m0, S0, y1, Sy1, y2, Sy2 = (jnp.asarray(np.asarray(a, dtype=np.float64)) for a in (m0, S0, y1, Sy1, y2, Sy2))
    d = m0.shape[0]

    def log_likelihood(theta):
        return jmvn.logpdf(theta, y1, Sy1) + jmvn.logpdf(theta, y2, Sy2)

    def log_prior(theta):
        return jmvn.logpdf(theta, m0, S0)

    def sample_prior(rng, n):
        return rng.multivariate_normal(np.asarray(m0), np.asarray(S0), size=n)

    return JaxModel(
        log_likelihood_jax=log_likelihood,
        log_prior_jax=log_prior,
        sample_prior_np=sample_prior,
        n_para=d,
    )
