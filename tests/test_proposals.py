import numpy as np
import pytest

from tempered_smc import (
    ConfigurationError,
    GaussianMixture,
    MvNormal,
    mvnormal_mixture_draw,
    nearest_spd,
    weighted_mean_and_cov,
)


def test_nearest_spd_keeps_positive_definite(rng):
    A = rng.standard_normal((4, 4))
    S = A @ A.T + 0.5 * np.eye(4)
    np.testing.assert_allclose(nearest_spd(S), S, rtol=1e-12, atol=1e-12)


def test_nearest_spd_repairs_indefinite():
    A = np.array([[1.0, 2.0, 0.0], [2.0, 1.0, 0.0], [0.0, 0.0, -1e-3]])
    B = nearest_spd(A)
    assert np.array_equal(B, B.T)
    np.linalg.cholesky(B)
    assert np.min(np.linalg.eigvalsh(B)) > 0.0


def test_nearest_spd_symmetrizes():
    A = np.array([[2.0, 1.0], [0.0, 2.0]])
    B = nearest_spd(A)
    np.testing.assert_allclose(B, [[2.0, 0.5], [0.5, 2.0]])


def test_weighted_mean_and_cov_matches_numpy(rng):
    x = rng.standard_normal((200, 3))
    w = rng.random(200)
    mu, cov = weighted_mean_and_cov(x, w)
    np.testing.assert_allclose(mu, np.average(x, axis=0, weights=w))
    np.testing.assert_allclose(cov, np.cov(x, rowvar=False, aweights=w, bias=True))


def test_mvnormal_log_density_matches_closed_form(rng):
    cov = np.array([[2.0, 0.3], [0.3, 0.5]])
    d = MvNormal(np.array([1.0, -1.0]), cov)
    x = rng.standard_normal((5, 2))
    diff = x - d.mean
    expected = -0.5 * (
        2 * np.log(2 * np.pi)
        + np.log(np.linalg.det(cov))
        + np.einsum("ni,ij,nj->n", diff, np.linalg.inv(cov), diff)
    )
    np.testing.assert_allclose(d.log_density(x), expected)
    assert np.ndim(d.log_density(x[0])) == 0


def test_mvnormal_sample_moments(rng):
    cov = np.array([[1.0, 0.8], [0.8, 2.0]])
    d = MvNormal(np.array([3.0, 0.0]), cov)
    draws = d.sample(rng, size=20000)
    np.testing.assert_allclose(draws.mean(axis=0), [3.0, 0.0], atol=0.05)
    np.testing.assert_allclose(np.cov(draws, rowvar=False), cov, atol=0.08)


def test_mvnormal_subset():
    cov = np.array([[1.0, 0.2, 0.1], [0.2, 2.0, 0.3], [0.1, 0.3, 3.0]])
    d = MvNormal(np.array([0.0, 1.0, 2.0]), cov).subset(np.array([2, 0]))
    np.testing.assert_allclose(d.mean, [2.0, 0.0])
    np.testing.assert_allclose(d.cov, [[3.0, 0.1], [0.1, 1.0]])


def test_mixture_weights_validated():
    d = MvNormal(np.zeros(1), np.eye(1))
    with pytest.raises(ValueError):
        GaussianMixture([d, d], [0.7, 0.7])


def test_mixture_draw_alpha_one_is_single_gaussian(rng):
    sigma = np.array([[1.0, 0.5], [0.5, 2.0]])
    d_prop = MvNormal(np.array([10.0, 10.0]), sigma)
    theta_old = rng.standard_normal((500, 2))
    c = 0.7
    theta_new, new_dens, old_dens = mvnormal_mixture_draw(rng, theta_old, d_prop, c=c, alpha=1.0)

    single = MvNormal(theta_old, c**2 * sigma)
    np.testing.assert_allclose(new_dens, single.log_density(theta_new))
    # symmetric random walk: forward and backward densities agree
    np.testing.assert_allclose(new_dens, old_dens)
    # no draw comes from the component centered at the reference mean
    assert np.all(np.abs(theta_new - theta_old) < 6.0)


def test_mixture_draw_alpha_one_moments(rng):
    sigma = np.array([[1.0, -0.3], [-0.3, 0.5]])
    d_prop = MvNormal(np.zeros(2), sigma)
    theta_old = np.tile([2.0, -1.0], (20000, 1))
    theta_new, _, _ = mvnormal_mixture_draw(rng, theta_old, d_prop, c=0.5, alpha=1.0)
    np.testing.assert_allclose(theta_new.mean(axis=0), [2.0, -1.0], atol=0.03)
    np.testing.assert_allclose(np.cov(theta_new, rowvar=False), 0.25 * sigma, atol=0.02)


def test_mixture_draw_single_point(rng):
    d_prop = MvNormal(np.zeros(3), np.eye(3))
    theta_new, new_dens, old_dens = mvnormal_mixture_draw(rng, np.ones(3), d_prop, c=1.0, alpha=0.5)
    assert theta_new.shape == (3,)
    assert np.ndim(new_dens) == 0 and np.ndim(old_dens) == 0
    assert np.isfinite(new_dens) and np.isfinite(old_dens)


def test_mixture_draw_reference_component_breaks_symmetry(rng):
    d_prop = MvNormal(np.zeros(2), np.eye(2))
    theta_old = np.full((50, 2), 3.0)
    _, new_dens, old_dens = mvnormal_mixture_draw(rng, theta_old, d_prop, c=1.0, alpha=0.0)
    assert not np.allclose(new_dens, old_dens)


@pytest.mark.parametrize("alpha", [-0.1, 1.5])
def test_mixture_draw_rejects_bad_alpha(rng, alpha):
    d_prop = MvNormal(np.zeros(2), np.eye(2))
    state = rng.bit_generator.state
    with pytest.raises(ConfigurationError):
        mvnormal_mixture_draw(rng, np.zeros(2), d_prop, alpha=alpha)
    # rejected before any random draw
    assert rng.bit_generator.state == state
