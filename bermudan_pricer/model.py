"""Two-factor additive Gaussian short-rate model (G2++).

    r(t) = x(t) + y(t) + phi(t)
    dx = -a x dt + sigma dW1,   dy = -b y dt + eta dW2,   dW1 dW2 = rho dt

``phi`` is never stored: it is implied by the discount curve so that the model
reproduces ``P(0, T)`` exactly (Brigo & Mercurio, ch. 4.2).
"""

from dataclasses import dataclass
from math import comb, factorial

import numpy as np
from scipy import integrate
from scipy.stats import norm

_U_MIN, _U_MAX = -20.0, 5.0
_RHO_MAX = 1.0 - 1.0e-10
# Floor of the mean reversion speeds reachable by the calibrator
_MIN_MEAN_REVERSION = 1.0e-3
# Below this value of rate * tau the kernels switch to their Taylor series
_SERIES_THRESHOLD = 0.05
_SERIES_TERMS = 12


def decay_integral(k, tau):
    """(1 - exp(-k tau)) / k, the B function of the affine bond formula."""
    return -np.expm1(-k * np.asarray(tau, dtype=float)) / k


def variance_kernel(k1, k2, tau):
    """(tau - B(k1) - B(k2) + B(k1 + k2)) / (k1 k2).

    ``sigma^2 * variance_kernel(a, a, tau)`` is the variance of the integral of
    x over ``tau``; the closed form cancels to ``tau^3 / 3`` as the speeds go to
    zero, so small arguments use the series
    ``sum_n (-1)^(n+1) tau^n / n! * ((k1 + k2)^(n-1) - k1^(n-1) - k2^(n-1)) / (k1 k2)``.
    """
    tau = np.asarray(tau, dtype=float)
    with np.errstate(all="ignore"):
        exact = (tau - decay_integral(k1, tau) - decay_integral(k2, tau)
                 + decay_integral(k1 + k2, tau)) / (k1 * k2)
    series = np.zeros_like(tau)
    for n in range(3, _SERIES_TERMS):
        c = sum(comb(n - 1, j) * k1 ** (j - 1) * k2 ** (n - 2 - j) for j in range(1, n - 1))
        series = series + (-1) ** (n + 1) * c * tau ** n / factorial(n)
    return np.where((k1 + k2) * tau < _SERIES_THRESHOLD, series, exact)


def decay_difference(k, l, tau):
    """(B(k) - B(l)) / (l - k) for ``l > k``; tends to ``tau^2 / 2``."""
    tau = np.asarray(tau, dtype=float)
    with np.errstate(all="ignore"):
        exact = (decay_integral(k, tau) - decay_integral(l, tau)) / (l - k)
    series = np.zeros_like(tau)
    for n in range(2, _SERIES_TERMS):
        h = sum(k ** j * l ** (n - 2 - j) for j in range(n - 1))
        series = series + (-1) ** n * h * tau ** n / factorial(n)
    return np.where(max(k, l) * tau < _SERIES_THRESHOLD, series, exact)


@dataclass(frozen=True)
class G2Params:
    a: float = 0.1
    sigma: float = 0.01
    b: float = 0.1
    eta: float = 0.01
    rho: float = -0.75

    def __post_init__(self):
        for name in ("a", "sigma", "b", "eta"):
            v = getattr(self, name)
            if not np.isfinite(v) or v <= 0.0:
                raise ValueError(f"G2 parameter '{name}' must be positive, got {v}")
        if not np.isfinite(self.rho) or not -1.0 <= self.rho <= 1.0:
            raise ValueError(f"G2 correlation must be in [-1, 1], got {self.rho}")

    def as_array(self):
        return np.array([self.a, self.sigma, self.b, self.eta, self.rho])

    @classmethod
    def from_array(cls, values):
        a, sigma, b, eta, rho = (float(v) for v in values)
        return cls(a, sigma, b, eta, rho)

    def to_dict(self):
        return {"a": self.a, "sigma": self.sigma, "b": self.b, "eta": self.eta, "rho": self.rho}

    def to_unconstrained(self):
        """Map to R^5: log for the volatilities, log of the excess over
        ``_MIN_MEAN_REVERSION`` for the speeds, artanh for rho."""
        floor = np.exp(_U_MIN)
        rho = np.clip(self.rho, -_RHO_MAX, _RHO_MAX)
        return np.array([
            np.log(max(self.a - _MIN_MEAN_REVERSION, floor)),
            np.log(self.sigma),
            np.log(max(self.b - _MIN_MEAN_REVERSION, floor)),
            np.log(self.eta),
            np.arctanh(rho),
        ])

    @classmethod
    def from_unconstrained(cls, u):
        u = np.asarray(u, dtype=float)
        pos = np.exp(np.clip(u[:4], _U_MIN, _U_MAX))
        rho = float(np.clip(np.tanh(u[4]), -_RHO_MAX, _RHO_MAX))
        a = _MIN_MEAN_REVERSION + float(pos[0])
        b = _MIN_MEAN_REVERSION + float(pos[2])
        return cls(a, float(pos[1]), b, float(pos[3]), rho)


@dataclass(frozen=True)
class PdeCoefficients:
    """Coefficients of the backward equation

    V_t + 0.5 sigma^2 V_xx + 0.5 eta^2 V_yy + rho sigma eta V_xy
        - a x V_x - b y V_y - (x + y + phi(t)) V = 0
    """

    a: float
    b: float
    diffusion_x: float
    diffusion_y: float
    mixed: float


class G2Model:
    """G2++ analytics on top of a discount curve.

    The curve is held by reference and read only. Parameters are mutated only
    through ``set_params`` (the calibrator); pricers work on ``snapshot()``.
    """

    def __init__(self, curve, params=None):
        self.curve = curve
        self._params = params if params is not None else G2Params()

    @property
    def params(self):
        return self._params

    def set_params(self, params):
        if not isinstance(params, G2Params):
            params = G2Params.from_array(params)
        self._params = params

    def snapshot(self):
        """Independent copy with the current parameters."""
        return G2Model(self.curve, self._params)

    # ------------------------------------------------------------------
    # Affine bond formula
    # ------------------------------------------------------------------
    @staticmethod
    def B(k, t, T):
        return decay_integral(k, np.asarray(T, dtype=float) - t)

    def V(self, t, T):
        """Variance of the integral of x + y over [t, T]."""
        p = self._params
        tau = np.asarray(T, dtype=float) - t
        out = (p.sigma ** 2 * variance_kernel(p.a, p.a, tau)
               + p.eta ** 2 * variance_kernel(p.b, p.b, tau)
               + 2.0 * p.rho * p.sigma * p.eta * variance_kernel(p.a, p.b, tau))
        return float(out) if out.ndim == 0 else out

    def A(self, t, T):
        ratio = self.curve.discount(T) / self.curve.discount(t)
        return ratio * np.exp(0.5 * (self.V(t, T) - self.V(0.0, T) + self.V(0.0, t)))

    def discount_bond(self, t, T, x, y):
        """P(t, T) given the factor state (x, y); vectorised over states."""
        p = self._params
        return self.A(t, T) * np.exp(-self.B(p.a, t, T) * x - self.B(p.b, t, T) * y)

    def phi_integral(self, t1, t2):
        """Integral of phi over [t1, t2], implied by the curve."""
        c = self.curve
        return float(np.log(c.discount(t1)) - np.log(c.discount(t2))
                     + 0.5 * (self.V(0.0, t2) - self.V(0.0, t1)))

    # ------------------------------------------------------------------
    # Transition structure (tree) and PDE coefficients
    # ------------------------------------------------------------------
    def step_moments(self, dt):
        """Conditional moments of (x, y) over a step of length ``dt``.

        Returns
        -------
        tuple
            (decay_x, decay_y, var_x, var_y, cov_xy). The conditional mean
            of x is ``x * decay_x``; the moments do not depend on the state.
        """
        p = self._params
        a, b = p.a, p.b
        var_x = float(p.sigma ** 2 * decay_integral(2.0 * a, dt))
        var_y = float(p.eta ** 2 * decay_integral(2.0 * b, dt))
        cov = float(p.rho * p.sigma * p.eta * decay_integral(a + b, dt))
        return np.exp(-a * dt), np.exp(-b * dt), var_x, var_y, cov

    def factor_std(self, t):
        """Unconditional standard deviations of x(t) and y(t) from the origin."""
        _, _, var_x, var_y, _ = self.step_moments(t)
        return float(np.sqrt(var_x)), float(np.sqrt(var_y))

    def pde_coefficients(self):
        p = self._params
        return PdeCoefficients(
            a=p.a,
            b=p.b,
            diffusion_x=0.5 * p.sigma ** 2,
            diffusion_y=0.5 * p.eta ** 2,
            mixed=p.rho * p.sigma * p.eta,
        )

    # ------------------------------------------------------------------
    # European swaption in closed form
    # ------------------------------------------------------------------
    def swaption(self, payer, exercise_time, payment_times, coefficients,
                 range_=6.0, intervals=16):
        """European swaption per unit notional (Brigo & Mercurio, th. 4.2.3).

        The underlying swap starts at ``exercise_time`` and pays
        ``coefficients[i]`` at ``payment_times[i]`` on its fixed side (the
        last coefficient includes the unit principal). The x-integral is taken
        with Simpson's rule on ``2 * intervals + 1`` points over
        ``+/- range_`` standard deviations.
        """
        p = self._params
        a, s, b, e, rho = p.a, p.sigma, p.b, p.eta, p.rho
        T = float(exercise_time)
        t_i = np.asarray(payment_times, dtype=float)
        c = np.asarray(coefficients, dtype=float)
        if np.any(c <= 0.0):
            raise ValueError("Swaption coefficients must be positive (non-negative strike)")
        w = 1.0 if payer else -1.0

        sx = s * float(np.sqrt(decay_integral(2.0 * a, T)))
        sy = e * float(np.sqrt(decay_integral(2.0 * b, T)))
        rxy = rho * s * e * float(decay_integral(a + b, T)) / (sx * sy)
        # T-forward measure drifts
        mux = float(-s * s * decay_difference(a, 2.0 * a, T) - rho * s * e * decay_difference(a, a + b, T))
        muy = float(-e * e * decay_difference(b, 2.0 * b, T) - rho * s * e * decay_difference(b, a + b, T))
        sq = np.sqrt(max(1.0 - rxy * rxy, 1.0e-14))

        A_i = self.A(T, t_i)
        Ba = self.B(a, T, t_i)
        Bb = self.B(b, T, t_i)

        x = mux + sx * np.linspace(-range_, range_, 2 * int(intervals) + 1)
        lam = c * A_i * np.exp(-np.outer(x, Ba))
        y_bar = _solve_critical_y(lam, Bb)

        h1 = (y_bar - muy) / (sy * sq) - rxy * (x - mux) / (sx * sq)
        h2 = h1[:, None] + Bb * sy * sq
        kappa = -Bb * (muy - 0.5 * (1.0 - rxy * rxy) * sy * sy * Bb
                       + (rxy * sy * (x - mux) / sx)[:, None])

        density = np.exp(-0.5 * ((x - mux) / sx) ** 2) / (sx * np.sqrt(2.0 * np.pi))
        inner = norm.cdf(-w * h1) - np.sum(lam * np.exp(kappa) * norm.cdf(-w * h2), axis=1)
        value = w * float(self.curve.discount(T)) * integrate.simpson(density * inner, x=x)
        return max(float(value), 0.0)


def _solve_critical_y(lam, Bb, tol=1.0e-13, max_iter=100):
    """Solve sum_i lam[k, i] exp(-Bb[i] y) = 1 for every row k.

    The left side is convex and decreasing in y. The starting point is chosen
    with f >= 0, from where Newton iterates increase monotonically to the root.
    """
    total = np.sum(lam, axis=1)
    log_total = np.log(total)
    y = np.where(log_total > 0.0, log_total / np.max(Bb), log_total / np.min(Bb))
    for _ in range(max_iter):
        terms = lam * np.exp(-np.outer(y, Bb))
        f = np.sum(terms, axis=1) - 1.0
        fprime = -np.sum(terms * Bb, axis=1)
        step = f / fprime
        y = y - step
        if np.max(np.abs(step)) < tol * (1.0 + np.max(np.abs(y))):
            break
    return y
