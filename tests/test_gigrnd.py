import math

import numpy as np
import pytest
from scipy.special import kve

from pyprscs.gigrnd import GIGRejectionError, dpsi, gig_moments, gigrnd, psi


def _raw_moment(k, p, a, b):
    w = math.sqrt(a * b)
    return (b / a) ** (k / 2.0) * kve(p + k, w) / kve(p, w)


def _sample(p, a, b, size, seed):
    rng = np.random.default_rng(seed)
    return np.array([gigrnd(p, a, b, rng) for _ in range(size)])


def _check_moments(x, p, a, b, n_se=5.0):
    """Compare sample mean/variance with closed form, tolerance in standard errors."""
    n = x.size
    m1, m2, m3, m4 = (_raw_moment(k, p, a, b) for k in (1, 2, 3, 4))
    var = m2 - m1**2
    mu4 = m4 - 4 * m1 * m3 + 6 * m1**2 * m2 - 3 * m1**4
    se_mean = math.sqrt(var / n)
    se_var = math.sqrt((mu4 - var**2) / n)
    assert abs(x.mean() - m1) <= n_se * se_mean
    assert abs(x.var() - var) <= n_se * se_var


def test_psi_at_zero_is_maximum():
    for alpha, lam in [(1.0, 0.5), (0.0, 2.0), (3.0, 0.0)]:
        assert psi(0.0, alpha, lam) == 0.0
        assert dpsi(0.0, alpha, lam) == 0.0
        assert psi(0.7, alpha, lam) < 0.0
        assert psi(-0.7, alpha, lam) < 0.0


@pytest.mark.parametrize("x", [-2.0, -0.3, 0.4, 1.5])
def test_dpsi_matches_finite_difference(x):
    alpha, lam = 0.8, 1.3
    h = 1e-6
    fd = (psi(x + h, alpha, lam) - psi(x - h, alpha, lam)) / (2 * h)
    assert dpsi(x, alpha, lam) == pytest.approx(fd, rel=1e-6)


def test_kernels_do_not_raise_on_overflow():
    assert psi(1000.0, 1.0, 0.0) == -math.inf
    assert psi(-1000.0, 1.0, 0.5) == -math.inf
    assert psi(1000.0, 0.0, 0.5) == -math.inf
    assert psi(-1000.0, 0.0, 0.5) == pytest.approx(-0.5 * 999.0)
    assert psi(1000.0, 0.0, 0.0) == 0.0
    assert dpsi(1000.0, 1.0, 0.0) == -math.inf
    assert dpsi(-1000.0, 1.0, 0.0) == math.inf
    assert dpsi(-1000.0, 0.0, 0.5) == 0.5
    assert dpsi(1000.0, 0.0, 0.0) == 0.0


def test_kernel_keeps_finite_values_near_overflow():
    # exp(710) overflows but exp(710) / 2 does not
    assert psi(710.0, 1.0, 0.0) == pytest.approx(-math.exp(710.0 - math.log(2.0)), rel=1e-12)
    assert dpsi(710.0, 1.0, 0.0) == pytest.approx(-math.exp(710.0 - math.log(2.0)), rel=1e-12)
    assert dpsi(-710.0, 1.0, 0.0) == pytest.approx(math.exp(710.0 - math.log(2.0)), rel=1e-12)
    assert math.isfinite(psi(720.0, 1e-10, 0.0))
    assert math.isfinite(psi(720.0, 0.0, 1e-10))
    assert psi(1e-9, 1e200, 0.0) == pytest.approx(-0.5 * 1e200 * 1e-18, rel=1e-9)


@pytest.mark.parametrize("p,a,b", [
    (0.5, 2.0, 1.0),
    (0.0, 1.0, 1.0),
    (-0.5, 1e-6, 1e6),
    (0.5, 1e-8, 1e-8),
    (0.5, 1e8, 1e-8),
    (100.0, 1.0, 1.0),
    (-100.0, 1.0, 1.0),
    (-0.5, 2.0, 1e-6),
    (0.5, 1e-200, 1e-200),
    (0.0, 1e-160, 1e-160),
    (0.5, 1e200, 1e200),
])
def test_draws_are_positive_and_finite(p, a, b):
    x = _sample(p, a, b, 500, seed=11)
    assert np.all(np.isfinite(x))
    assert np.all(x > 0)


def test_unrepresentable_draw_raises_value_error():
    # GIG(0.5, 1e-320, 1) sits around 1e320, beyond the largest double
    with pytest.raises(ValueError, match="floating-point range"):
        gigrnd(0.5, 1e-320, 1.0, np.random.default_rng(0))


@pytest.mark.parametrize("p,a,b", [
    (0.5, 2.0, 1.0),
    (2.0, 1.0, 3.0),
    (-0.5, 1.0, 1.0),
    (-2.5, 4.0, 0.5),
    (0.01, 1.0, 1.0),
    (-0.01, 0.5, 2.0),
    (0.5, 2.0, 1e-4),
    (-10.0, 1e-3, 2.0),
])
def test_moments_match_closed_form(p, a, b):
    x = _sample(p, a, b, 100000, seed=2024)
    _check_moments(x, p, a, b)


def test_gig_moments_gamma_limit():
    # GIG(p, a, b -> 0) is Gamma(shape=p, rate=a/2)
    mean, var = gig_moments(1.5, 2.0, 1e-10)
    assert mean == pytest.approx(1.5, rel=1e-6)
    assert var == pytest.approx(1.5, rel=1e-6)


def test_reciprocal_symmetry():
    lam, a, b = 1.5, 3.0, 0.7
    inv = 1.0 / _sample(-lam, a, b, 100000, seed=5)
    direct = _sample(lam, b, a, 100000, seed=6)
    _check_moments(inv, lam, b, a)
    _check_moments(direct, lam, b, a)
    assert inv.mean() == pytest.approx(direct.mean(), rel=0.02)


@pytest.mark.parametrize("a,b", [(0.0, 1.0), (1.0, 0.0), (-1.0, 1.0), (1.0, math.nan), (math.inf, 1.0)])
def test_invalid_scale_parameters(a, b):
    with pytest.raises(ValueError):
        gigrnd(0.5, a, b, np.random.default_rng(0))


def test_iteration_cap_raises_instead_of_returning():
    with pytest.raises(GIGRejectionError):
        gigrnd(0.5, 1.0, 1.0, np.random.default_rng(0), max_iter=0)
    x = gigrnd(0.5, 1.0, 1.0, np.random.default_rng(0), max_iter=10000)
    assert x > 0


def test_same_seed_same_draws():
    x1 = _sample(0.5, 2.0, 0.3, 50, seed=9)
    x2 = _sample(0.5, 2.0, 0.3, 50, seed=9)
    np.testing.assert_array_equal(x1, x2)


def test_draws_consume_the_given_stream():
    rng = np.random.default_rng(3)
    gigrnd(0.5, 1.0, 1.0, rng)
    untouched = np.random.default_rng(3)
    assert rng.random() != untouched.random()
