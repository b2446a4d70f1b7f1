import logging
from dataclasses import dataclass, field

import numpy as np

from ..timegrid import TimeGrid
from .base import PricingEngine

logger = logging.getLogger(__name__)

_SQRT3 = np.sqrt(3.0)
# Floor of the residual variance relative to var(y) when |rho| -> 1
_MIN_VAR_RATIO = 1.0e-12


def trinomial_branch(mean, std):
    """Trinomial branching on a lattice of spacing ``sqrt(3) * std``.

    Returns the centre index ``k`` of the successors and the probabilities
    of moving to ``k - 1``, ``k`` and ``k + 1`` (last axis). Mean and
    variance are matched exactly; with ``|mean - k * dx| <= dx / 2`` every
    probability lies in [1/24, 2/3].
    """
    dx = _SQRT3 * std
    k = np.rint(mean / dx).astype(int)
    e = (mean - k * dx) / std
    e2 = e * e
    p = np.stack(
        [(1.0 + e2 - _SQRT3 * e) / 6.0, (2.0 - e2) / 3.0, (1.0 + e2 + _SQRT3 * e) / 6.0],
        axis=-1,
    )
    return k, p


@dataclass
class TreeLevel:
    """Nodes at one grid time.

    States are stored in sheared coordinates ``(x, w)`` with
    ``y = w + beta * x``; ``phi`` is the deterministic shift of the short
    rate over the step leaving this level.
    """

    time: float
    x: np.ndarray
    w: np.ndarray
    beta: float
    phi: float = 0.0

    @property
    def shape(self):
        return (len(self.x), len(self.w))

    @property
    def y(self):
        return self.w[None, :] + self.beta * self.x[:, None]

    def short_rate(self):
        return self.x[:, None] + self.y + self.phi


@dataclass
class TreeStep:
    """Transition from level ``i`` to ``i + 1`` (state independent parts)."""

    dt: float
    decay_x: float
    decay_y: float
    beta: float
    std_x: float
    std_w: float
    x_offset: int
    w_offset: int

    def branching(self, level):
        """Centre indices into the next level and the branch probabilities.

        x branches on its own; ``w' = y' - beta * x'`` is uncorrelated with
        ``x'`` so its branching is independent and the joint probabilities
        are products.
        """
        mean_x = level.x * self.decay_x
        mean_w = level.y * self.decay_y - self.beta * mean_x[:, None]
        kx, px = trinomial_branch(mean_x, self.std_x)
        kw, pw = trinomial_branch(mean_w, self.std_w)
        return kx - self.x_offset, px, kw - self.w_offset, pw


@dataclass
class G2Lattice:
    grid: TimeGrid
    levels: list = field(default_factory=list)
    steps: list = field(default_factory=list)

    def successors(self, i):
        """Yield ``(ix, iw, prob)`` for the nine branches leaving level ``i``.

        ``ix`` has shape (nx, 1) and ``iw``, ``prob`` shape (nx, nw), indexing
        the nodes of level ``i + 1``.
        """
        ix, px, iw, pw = self.steps[i].branching(self.levels[i])
        for a in range(3):
            for b in range(3):
                yield (ix + a - 1)[:, None], iw + b - 1, px[:, a][:, None] * pw[..., b]

    def expectation(self, i, values):
        """E[values(level i+1) | level i] on every node of level ``i``."""
        out = np.zeros(self.levels[i].shape)
        for ix, iw, prob in self.successors(i):
            out += prob * values[ix, iw]
        return out

    def propagate(self, i, weights):
        """Push node weights of level ``i`` forward to level ``i + 1``."""
        nx, nw = self.levels[i + 1].shape
        out = np.zeros(nx * nw)
        for ix, iw, prob in self.successors(i):
            flat = np.broadcast_to(ix * nw, prob.shape) + iw
            out += np.bincount(flat.ravel(), weights=(weights * prob).ravel(), minlength=nx * nw)
        return out.reshape(nx, nw)


class G2TreeEngine(PricingEngine):
    """Two-factor recombining trinomial tree for Bermudan swaptions.

    Per step the factor ``x`` branches trinomially and the second coordinate
    is the residual ``w = y - beta * x`` of ``y`` regressed on ``x`` over that
    step, so the joint branch probabilities factorise, lie in [0, 1] and
    match the conditional means, variances and covariance of (x, y)
    exactly. The deterministic shift ``phi`` is fitted step by step with
    Arrow-Debreu prices so that the tree reprices the discount curve.
    """

    def __init__(self, model, time_steps=50):
        super().__init__(model)
        if int(time_steps) < 1:
            raise ValueError("The tree needs at least one time step")
        self.time_steps = int(time_steps)

    def build(self, grid):
        """Lay out the nodes on ``grid`` and fit ``phi`` to the curve."""
        model = self.model
        lattice = G2Lattice(grid)
        lattice.levels.append(TreeLevel(0.0, np.zeros(1), np.zeros(1), 0.0))

        for i in range(len(grid) - 1):
            dt = grid.dt(i)
            decay_x, decay_y, var_x, var_y, cov = model.step_moments(dt)
            beta = cov / var_x
            var_w = max(var_y - cov * beta, _MIN_VAR_RATIO * var_y)
            step = TreeStep(dt, decay_x, decay_y, beta, np.sqrt(var_x), np.sqrt(var_w), 0, 0)

            kx, _, kw, _ = step.branching(lattice.levels[-1])
            step.x_offset = int(kx.min()) - 1
            step.w_offset = int(kw.min()) - 1
            x = np.arange(step.x_offset, int(kx.max()) + 2) * (_SQRT3 * step.std_x)
            w = np.arange(step.w_offset, int(kw.max()) + 2) * (_SQRT3 * step.std_w)
            lattice.steps.append(step)
            lattice.levels.append(TreeLevel(grid[i + 1], x, w, beta))

        # Forward induction on Arrow-Debreu prices
        q = np.ones((1, 1))
        for i, step in enumerate(lattice.steps):
            level = lattice.levels[i]
            disc = np.exp(-(level.x[:, None] + level.y) * step.dt)
            target = model.curve.discount(grid[i + 1])
            level.phi = float((np.log(np.sum(q * disc)) - np.log(target)) / step.dt)
            q = lattice.propagate(i, q * disc * np.exp(-level.phi * step.dt))

        logger.debug(
            "G2 tree: %d steps, %d nodes on the widest level",
            len(lattice.steps), max(np.prod(lv.shape) for lv in lattice.levels),
        )
        return lattice

    def state_prices(self, lattice):
        """Arrow-Debreu prices of every level (curve repricing diagnostics)."""
        q = np.ones((1, 1))
        out = [q]
        for i, step in enumerate(lattice.steps):
            disc = np.exp(-lattice.levels[i].short_rate() * step.dt)
            q = lattice.propagate(i, q * disc)
            out.append(q)
        return out

    def price(self, data):
        grid = TimeGrid.from_instruments([data], self.time_steps)
        lattice = self.build(grid)
        exercise_at = {grid.index(t): k for k, t in enumerate(data.exercise_times)}

        n = len(lattice.steps)
        values = np.zeros(lattice.levels[n].shape)
        for i in range(n, -1, -1):
            level = lattice.levels[i]
            if i < n:
                disc = np.exp(-level.short_rate() * lattice.steps[i].dt)
                values = disc * lattice.expectation(i, values)
            if i in exercise_at:
                exercise = data.exercise_value(self.model, exercise_at[i], level.x[:, None], level.y)
                values = np.maximum(values, exercise)

        npv = float(values[0, 0])
        logger.debug("G2 tree NPV (%d steps): %.6f", self.time_steps, npv)
        return npv
