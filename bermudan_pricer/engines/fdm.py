import logging

import numpy as np
from scipy import interpolate, linalg

from ..errors import PdeInstabilityError
from ..timegrid import TimeGrid
from .base import PricingEngine

logger = logging.getLogger(__name__)

_SCHEMES = ("douglas", "hundsdorfer")


def default_theta(scheme):
    if scheme == "douglas":
        return 0.5
    return 0.5 + np.sqrt(3.0) / 6.0


def concentrated_mesh(half_width, points, concentration):
    """Points on ``[-half_width, half_width]`` clustered around 0.

    ``z = L sinh(c xi) / sinh(c)`` on a uniform ``xi`` in [-1, 1]; the ratio
    of the edge spacing to the centre spacing is ``cosh(c)``. ``c = 0`` gives
    the uniform mesh.
    """
    xi = np.linspace(-1.0, 1.0, int(points))
    if concentration <= 0.0:
        return half_width * xi
    return half_width * np.sinh(concentration * xi) / np.sinh(concentration)


class MeshDerivatives:
    """Three-point first and second derivative weights on a non-uniform mesh.

    Row ``i`` of ``first`` and ``second`` holds the weights of
    ``(u[i-1], u[i], u[i+1])``; the edge rows are zero.
    """

    def __init__(self, z):
        self.z = np.asarray(z, dtype=float)
        n = len(self.z)
        h = np.diff(self.z)
        hm, hp = h[:-1], h[1:]
        self.first = np.zeros((n, 3))
        self.second = np.zeros((n, 3))
        self.first[1:-1, 0] = -hp / (hm * (hm + hp))
        self.first[1:-1, 1] = (hp - hm) / (hm * hp)
        self.first[1:-1, 2] = hm / (hp * (hm + hp))
        self.second[1:-1, 0] = 2.0 / (hm * (hm + hp))
        self.second[1:-1, 1] = -2.0 / (hm * hp)
        self.second[1:-1, 2] = 2.0 / (hp * (hm + hp))
        # linear extrapolation ratios at the two edges
        self.r_low = h[0] / h[1]
        self.r_high = h[-1] / h[-2]
        self.h_min = float(h.min())
        self.h_local = np.zeros(n)
        self.h_local[1:-1] = np.maximum(hm, hp)

    def __len__(self):
        return len(self.z)

    def operator(self, diffusion, kappa, rate):
        """Rows of ``diffusion * d2 - kappa z d - rate`` as (lower, diag, upper)."""
        drift = -kappa * self.z
        stencil = diffusion * self.second + drift[:, None] * self.first
        stencil[1:-1, 1] -= rate[1:-1]
        return stencil[:, 0], stencil[:, 1], stencil[:, 2]

    def peclet(self, diffusion, kappa):
        """Largest cell Peclet number ``|kappa z| h / (2 diffusion)``."""
        return float(np.max(np.abs(kappa * self.z) * self.h_local) / (2.0 * diffusion))


class G2FdmEngine(PricingEngine):
    """ADI finite-difference engine for the two-factor G2 backward equation.

    Solves

        V_t + 0.5 sigma^2 V_xx + 0.5 eta^2 V_yy + rho sigma eta V_xy
            - a x V_x - b y V_y - (x + y + phi) V = 0

    on ``+/- n_std`` standard deviations of each factor at the last exercise
    time. The mesh is concentrated around the origin, where the factors sit
    at the early exercise dates and where the price is read. The operator is
    split into ``A1`` (x terms), ``A2`` (y terms), each carrying half of
    ``phi``, and the mixed term ``A0`` which is always treated explicitly.
    Edge values follow the no-curvature condition (linear extrapolation of
    the interior).

    The first ``damping_steps`` steps after the payoff and after every
    exercise clip are taken as two implicit Euler half steps, which smooth
    the kink that the Crank-Nicolson type schemes would otherwise carry
    around as oscillations.

    Schemes
    -------
    douglas
        One predictor and two implicit corrections (theta = 1/2 by default).
    hundsdorfer
        Hundsdorfer-Verwer, a second corrector sweep (theta = 1/2 + sqrt(3)/6).
    """

    def __init__(self, model, t_grid=100, x_grid=51, y_grid=51, n_std=5.0,
                 scheme="hundsdorfer", theta=None, concentration=1.5, damping_steps=2):
        super().__init__(model)
        if scheme not in _SCHEMES:
            raise ValueError(f"Unknown ADI scheme '{scheme}', expected one of {_SCHEMES}")
        if int(x_grid) < 3 or int(y_grid) < 3:
            raise ValueError("The spatial grid needs at least 3 points per factor")
        if int(t_grid) < 1:
            raise ValueError("The time grid needs at least one step")
        if concentration < 0.0:
            raise ValueError("The mesh concentration cannot be negative")
        if int(damping_steps) < 0:
            raise ValueError("The number of damping steps cannot be negative")
        self.t_grid = int(t_grid)
        self.x_grid = int(x_grid)
        self.y_grid = int(y_grid)
        self.n_std = float(n_std)
        self.scheme = scheme
        self.theta = float(theta) if theta is not None else default_theta(scheme)
        self.concentration = float(concentration)
        self.damping_steps = int(damping_steps)

    # ------------------------------------------------------------------
    # Grids
    # ------------------------------------------------------------------
    def spatial_grid(self, horizon):
        std_x, std_y = self.model.factor_std(horizon)
        xs = concentrated_mesh(self.n_std * std_x, self.x_grid, self.concentration)
        ys = concentrated_mesh(self.n_std * std_y, self.y_grid, self.concentration)
        return xs, ys

    def check_stability(self, grid, xs, ys):
        """Raise ``PdeInstabilityError`` if the discretisation breaks a bound.

        The theta-weighted implicit part bounds the diffusion number
        ``dt * (sigma^2/dx^2 + eta^2/dy^2 + |rho| sigma eta/(dx dy))`` on the
        finest cells by ``1 / (1 - 2 theta)`` when ``theta < 1/2``. For any
        theta the central convection stencil needs a cell Peclet number
        ``|a x| dx / sigma^2`` (resp. ``|b y| dy / eta^2``) of at most one,
        otherwise the off-diagonal weights change sign and the solution
        oscillates.
        """
        c = self.model.pde_coefficients()
        mx, my = MeshDerivatives(xs), MeshDerivatives(ys)
        dt = float(np.max(np.diff(grid.times)))
        dx, dy = mx.h_min, my.h_min
        ratio = dt * (2.0 * c.diffusion_x / dx ** 2 + 2.0 * c.diffusion_y / dy ** 2
                      + abs(c.mixed) / (dx * dy))
        bound = 1.0 / (1.0 - 2.0 * self.theta) if self.theta < 0.5 else np.inf
        if ratio > bound:
            raise PdeInstabilityError(ratio, bound, dt, dx, dy)

        peclet = max(mx.peclet(c.diffusion_x, c.a), my.peclet(c.diffusion_y, c.b))
        if peclet > 1.0:
            raise PdeInstabilityError(peclet, 1.0, dt, float(mx.h_local.max()),
                                      float(my.h_local.max()), condition="cell Peclet number")
        return ratio

    # ------------------------------------------------------------------
    # Operators
    # ------------------------------------------------------------------
    @staticmethod
    def _apply(u, stencil, axis):
        lower, diag, upper = stencil
        v = np.moveaxis(u, axis, 0)
        out = np.zeros_like(v)
        shape = (-1,) + (1,) * (v.ndim - 1)
        out[1:-1] = (lower[1:-1].reshape(shape) * v[:-2]
                     + diag[1:-1].reshape(shape) * v[1:-1]
                     + upper[1:-1].reshape(shape) * v[2:])
        return np.moveaxis(out, 0, axis)

    @staticmethod
    def _banded(stencil, theta_dt, mesh):
        """``I - theta dt A`` in ``solve_banded`` layout, no-curvature edges."""
        lower, diag, upper = stencil
        n = len(diag)
        ab = np.zeros((5, n))
        i = np.arange(1, n - 1)
        ab[3, i - 1] = -theta_dt * lower[i]
        ab[2, i] = 1.0 - theta_dt * diag[i]
        ab[1, i + 1] = -theta_dt * upper[i]
        ab[2, 0], ab[1, 1], ab[0, 2] = 1.0, -(1.0 + mesh.r_low), mesh.r_low
        ab[2, n - 1], ab[3, n - 2], ab[4, n - 3] = 1.0, -(1.0 + mesh.r_high), mesh.r_high
        return ab

    @staticmethod
    def _solve(ab, rhs, axis):
        v = np.moveaxis(rhs, axis, 0).copy()
        v[0] = 0.0
        v[-1] = 0.0
        return np.moveaxis(linalg.solve_banded((2, 2), ab, v), 0, axis)

    @staticmethod
    def _apply_mixed(u, coeff, mx, my):
        """``coeff * d2u/dxdy`` on the interior, as d/dx of d/dy."""
        wy = my.first[1:-1]
        uy = wy[:, 0] * u[:, :-2] + wy[:, 1] * u[:, 1:-1] + wy[:, 2] * u[:, 2:]
        wx = mx.first[1:-1, :, None]
        out = np.zeros_like(u)
        out[1:-1, 1:-1] = coeff * (wx[:, 0] * uy[:-2] + wx[:, 1] * uy[1:-1] + wx[:, 2] * uy[2:])
        return out

    def _step(self, u, dt, phi_bar, mx, my, scheme, theta):
        """Advance ``u`` by ``dt`` in time to maturity."""
        c = self.model.pde_coefficients()
        sx = mx.operator(c.diffusion_x, c.a, mx.z + 0.5 * phi_bar)
        sy = my.operator(c.diffusion_y, c.b, my.z + 0.5 * phi_bar)
        theta_dt = theta * dt
        ab_x, ab_y = self._banded(sx, theta_dt, mx), self._banded(sy, theta_dt, my)

        def a1(v):
            return self._apply(v, sx, 0)

        def a2(v):
            return self._apply(v, sy, 1)

        def full(v):
            return self._apply_mixed(v, c.mixed, mx, my) + a1(v) + a2(v)

        f_u = full(u)
        y0 = u + dt * f_u
        y1 = self._solve(ab_x, y0 - theta_dt * a1(u), 0)
        y2 = self._solve(ab_y, y1 - theta_dt * a2(u), 1)
        if scheme == "douglas":
            return y2

        z0 = y0 + 0.5 * dt * (full(y2) - f_u)
        z1 = self._solve(ab_x, z0 - theta_dt * a1(y2), 0)
        return self._solve(ab_y, z1 - theta_dt * a2(y2), 1)

    def _damped_step(self, u, dt, phi_bar, mx, my):
        half = 0.5 * dt
        u = self._step(u, half, phi_bar, mx, my, "douglas", 1.0)
        return self._step(u, half, phi_bar, mx, my, "douglas", 1.0)

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------
    def price(self, data):
        grid = TimeGrid.from_instruments([data], self.t_grid)
        horizon = float(data.exercise_times[-1])
        xs, ys = self.spatial_grid(horizon)
        self.check_stability(grid, xs, ys)
        mx, my = MeshDerivatives(xs), MeshDerivatives(ys)
        X, Y = np.meshgrid(xs, ys, indexing="ij")
        logger.debug(
            "G2 FDM: %d time steps on a %dx%d grid (%s, theta=%.4f, concentration=%.2f)",
            len(grid) - 1, self.x_grid, self.y_grid, self.scheme, self.theta,
            self.concentration,
        )

        exercise_at = {grid.index(t): k for k, t in enumerate(data.exercise_times)}
        n = len(grid) - 1
        u = np.maximum(data.exercise_value(self.model, exercise_at[n], X, Y), 0.0)
        damping_left = self.damping_steps
        for i in range(n - 1, -1, -1):
            dt = grid.dt(i)
            phi_bar = self.model.phi_integral(grid[i], grid[i + 1]) / dt
            if damping_left > 0:
                u = self._damped_step(u, dt, phi_bar, mx, my)
                damping_left -= 1
            else:
                u = self._step(u, dt, phi_bar, mx, my, self.scheme, self.theta)
            if i in exercise_at:
                u = np.maximum(u, data.exercise_value(self.model, exercise_at[i], X, Y))
                damping_left = self.damping_steps

        interp = interpolate.RegularGridInterpolator((xs, ys), u)
        npv = float(interp([[0.0, 0.0]])[0])
        logger.debug("G2 FDM NPV: %.6f", npv)
        return npv
