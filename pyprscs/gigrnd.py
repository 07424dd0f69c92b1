"""
Generalized Inverse Gaussian (GIG) random variate generation.

This module implements the symmetrized rejection sampler for the GIG distribution
with density proportional to x^(p-1) exp(-(a x + b/x)/2), x > 0. The sampler works
on the log scale of the two-parameter GIG(lam, omega) and builds a majorizing
envelope made of a flat central region and two exponential tails, derived from
tangent lines of the concave function psi. Closed-form GIG moments are provided
for diagnostics.
"""
from __future__ import annotations
import math
import numpy as np
from scipy.special import kve
from typing import Optional, Tuple


class GIGRejectionError(RuntimeError):
    """Raised when the rejection loop exceeds a caller-supplied iteration cap."""


# beyond this |x|, cosh(x) - 1 == exp(|x|)/2 and exp(x) - x - 1 == exp(x) to double precision
_X_LARGE = 50.0


def _scaled_exp(c: float, y: float) -> float:
    """c * exp(y) for c > 0, returning inf only when the product itself overflows."""
    try:
        return c * math.exp(y)
    except OverflowError:
        pass
    try:
        return math.exp(y + math.log(c))
    except OverflowError:
        return math.inf


def _coshm1_term(alpha: float, x: float) -> float:
    """alpha * (cosh(x) - 1)."""
    if alpha == 0:
        return 0.0
    if abs(x) < _X_LARGE:
        return alpha * 2.0 * math.sinh(0.5 * x)**2
    return _scaled_exp(0.5 * alpha, abs(x))


def _expm1mx_term(lam: float, x: float) -> float:
    """lam * (exp(x) - x - 1)."""
    if lam == 0:
        return 0.0
    if x < _X_LARGE:
        return lam * (math.expm1(x) - x)
    return _scaled_exp(lam, x)


def psi(x: float, alpha: float, lam: float) -> float:
    """Concave log-density kernel psi(x) = -alpha (cosh x - 1) - lam (exp x - x - 1).

    Each term is evaluated on its own, so a term that overflows gives -inf while a
    finite term is never lost to the other one overflowing.
    """
    return -_coshm1_term(alpha, x) - _expm1mx_term(lam, x)


def dpsi(x: float, alpha: float, lam: float) -> float:
    """Derivative of psi with respect to x."""
    if alpha == 0:
        sinh_term = 0.0
    elif abs(x) < _X_LARGE:
        sinh_term = alpha * math.sinh(x)
    else:
        sinh_term = math.copysign(_scaled_exp(0.5 * alpha, abs(x)), x)
    if lam == 0:
        exp_term = 0.0
    elif x < _X_LARGE:
        exp_term = lam * math.expm1(x)
    else:
        exp_term = _scaled_exp(lam, x)
    return -sinh_term - exp_term


def _find_t(alpha: float, lam: float) -> float:
    """Right breakpoint of the envelope."""
    x = -psi(1.0, alpha, lam)
    if 0.5 <= x <= 2.0:
        return 1.0
    if alpha == 0 and lam == 0:
        return 1.0
    if x > 2.0:
        return math.sqrt(2.0 / (alpha + lam))
    return math.log(4.0) - math.log(alpha + 2.0 * lam)


def _find_s(alpha: float, lam: float) -> float:
    """Left breakpoint of the envelope (the envelope is cut at -s)."""
    x = -psi(-1.0, alpha, lam)
    if 0.5 <= x <= 2.0:
        return 1.0
    if alpha == 0 and lam == 0:
        return 1.0
    if x > 2.0:
        return math.sqrt(4.0 / (alpha * math.cosh(1.0) + lam))
    if alpha == 0:
        return 1.0 / lam
    if alpha < 1e-100:
        # log(1 + u + sqrt(u^2 + 2u)) with u = 1/alpha is log(2u) to double precision
        s_alpha = math.log(2.0) - math.log(alpha)
    else:
        u = 1.0 / alpha
        s_alpha = math.log(1.0 + u + math.sqrt(u) * math.sqrt(u + 2.0))
    if lam == 0:
        return s_alpha
    return min(1.0 / lam, s_alpha)


def gigrnd(p: float, a: float, b: float, rng: Optional[np.random.Generator] = None,
           max_iter: Optional[int] = None) -> float:
    """Draw one variate from GIG(p, a, b).

    Parameters
    ----------
    p : float
        Shape parameter (any real value).
    a : float
        Scale parameter multiplying x; must be finite and > 0.
    b : float
        Scale parameter multiplying 1/x; must be finite and > 0.
    rng : numpy.random.Generator, optional
        Source of uniform draws. Callers running a chain should always pass their
        own generator so the whole run consumes a single stream.
    max_iter : int, optional
        Diagnostic cap on the number of rejection rounds. When exceeded a
        GIGRejectionError is raised. No cap by default.

    Returns
    -------
    float
        A strictly positive GIG variate.
    """
    p = float(p); a = float(a); b = float(b)
    if not (math.isfinite(a) and a > 0):
        raise ValueError(f"GIG parameter a must be finite and positive, got {a!r}.")
    if not (math.isfinite(b) and b > 0):
        raise ValueError(f"GIG parameter b must be finite and positive, got {b!r}.")
    if rng is None:
        rng = np.random.default_rng()

    # sample from the two-parameter GIG(lam, omega), recover GIG(p, a, b) at the end
    lam = abs(p)
    swap = p < 0
    omega = math.sqrt(a) * math.sqrt(b)
    if omega == 0 or not math.isfinite(omega):
        raise ValueError(f"GIG parameters a={a!r}, b={b!r} give sqrt(a*b) outside floating-point range.")
    # sqrt(omega^2 + lam^2) - lam without cancellation or overflow
    alpha = omega * (omega / (math.hypot(omega, lam) + lam))

    t = _find_t(alpha, lam)
    s = _find_s(alpha, lam)

    eta = -psi(t, alpha, lam)
    zeta = -dpsi(t, alpha, lam)
    theta = -psi(-s, alpha, lam)
    xi = dpsi(-s, alpha, lam)
    if not (xi > 0 and zeta > 0 and math.isfinite(eta) and math.isfinite(theta)):
        raise ValueError(f"degenerate GIG envelope for p={p!r}, a={a!r}, b={b!r} "
                         f"(eta={eta!r}, zeta={zeta!r}, theta={theta!r}, xi={xi!r}).")

    p_r = 1.0 / xi
    r = 1.0 / zeta
    td = t - r * eta
    sd = s - p_r * theta
    q = td + sd
    total = p_r + q + r

    n_round = 0
    while True:
        n_round += 1
        if max_iter is not None and n_round > max_iter:
            raise GIGRejectionError(
                f"GIG rejection sampler did not accept within {max_iter} rounds (p={p}, a={a}, b={b})."
            )
        # uniforms on (0, 1] keep log(V) finite
        U, V, W = (1.0 - rng.random(3)).tolist()
        if U < q / total:
            rnd = -sd + q * V
        elif U < (q + r) / total:
            rnd = td - r * math.log(V)
        else:
            rnd = -sd + p_r * math.log(V)

        if rnd > td:
            hat = math.exp(-eta - zeta * (rnd - t))
        elif rnd < -sd:
            hat = math.exp(-theta + xi * (rnd + s))
        else:
            hat = 1.0
        if W * hat <= math.exp(psi(rnd, alpha, lam)):
            break

    # back-transform on the log scale; asinh(r) = log(r + sqrt(1 + r^2))
    log_rnd = rnd + math.asinh(lam / omega)
    if swap:
        log_rnd = -log_rnd
    log_rnd += 0.5 * (math.log(b) - math.log(a))
    try:
        rnd = math.exp(log_rnd)
    except OverflowError:
        rnd = math.inf
    if not (0 < rnd < math.inf):
        raise ValueError(f"GIG draw for p={p!r}, a={a!r}, b={b!r} is outside floating-point range "
                         f"(log value {log_rnd!r}).")
    return rnd


def gig_moments(p: float, a: float, b: float) -> Tuple[float, float]:
    """Closed-form mean and variance of GIG(p, a, b).

    Uses exponentially scaled Bessel functions, whose scaling cancels in the ratios.
    """
    if a <= 0 or b <= 0:
        raise ValueError("GIG moments require a > 0 and b > 0.")
    w = math.sqrt(a * b)
    scale = math.sqrt(b / a)
    k0 = kve(p, w)
    mean = scale * kve(p + 1.0, w) / k0
    second = scale**2 * kve(p + 2.0, w) / k0
    return float(mean), float(second - mean**2)
