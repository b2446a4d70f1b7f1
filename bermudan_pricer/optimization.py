"""Levenberg-Marquardt least squares with MINPACK-style stopping tests."""

import enum
import logging
from dataclasses import dataclass

import numpy as np

logger = logging.getLogger(__name__)


class EndCriteriaType(enum.Enum):
    NONE = "NONE"
    MAX_ITERATIONS = "MAX_ITERATIONS"
    STALLED_STEPS = "STALLED_STEPS"
    FUNCTION_TOLERANCE = "FUNCTION_TOLERANCE"
    PARAM_TOLERANCE = "PARAM_TOLERANCE"
    GRADIENT_TOLERANCE = "GRADIENT_TOLERANCE"

    @property
    def converged(self):
        return self in (
            EndCriteriaType.FUNCTION_TOLERANCE,
            EndCriteriaType.PARAM_TOLERANCE,
            EndCriteriaType.GRADIENT_TOLERANCE,
        )


@dataclass(frozen=True)
class EndCriteria:
    """Stopping rules of the optimizer.

    ``root_tolerance`` bounds the relative cost reduction of an accepted step,
    ``param_tolerance`` the relative step length and ``gradient_tolerance``
    the infinity norm of the gradient of the cost.
    """

    max_iterations: int = 400
    max_stalled_steps: int = 100
    root_tolerance: float = 1.0e-8
    param_tolerance: float = 1.0e-8
    gradient_tolerance: float = 1.0e-8

    def __post_init__(self):
        if self.max_iterations < 1 or self.max_stalled_steps < 1:
            raise ValueError("EndCriteria needs positive iteration budgets")
        for name in ("root_tolerance", "param_tolerance", "gradient_tolerance"):
            if getattr(self, name) < 0.0:
                raise ValueError(f"EndCriteria.{name} must be non-negative")


@dataclass
class OptimizationResult:
    x: np.ndarray
    cost: float
    residuals: np.ndarray
    iterations: int
    evaluations: int
    end_criteria: EndCriteriaType

    @property
    def converged(self):
        return self.end_criteria.converged


class LevenbergMarquardt:
    """Damped Gauss-Newton on ``0.5 * |r(x)|^2``.

    The Jacobian is approximated by finite differences (``"forward"`` or
    ``"central"``). Damping follows Marquardt's scaling by ``diag(J^T J)``:
    divided by 10 after an accepted step, multiplied by 10 after a rejected
    one. Every rejection counts as a stalled step; an accepted step resets the
    count. Residual vectors with non-finite entries are treated as rejections.
    """

    def __init__(self, jacobian="central", initial_damping=1.0e-3):
        if jacobian not in ("forward", "central"):
            raise ValueError(f"Unknown finite-difference scheme '{jacobian}'")
        self.jacobian = jacobian
        self.initial_damping = float(initial_damping)

    def _jacobian(self, fun, x, r):
        n = x.size
        eps = np.finfo(float).eps
        J = np.empty((r.size, n))
        if self.jacobian == "forward":
            for k in range(n):
                h = np.sqrt(eps) * max(abs(x[k]), 1.0)
                xp = x.copy()
                xp[k] += h
                J[:, k] = (fun(xp) - r) / h
            return J, n
        for k in range(n):
            h = eps ** (1.0 / 3.0) * max(abs(x[k]), 1.0)
            xp, xm = x.copy(), x.copy()
            xp[k] += h
            xm[k] -= h
            J[:, k] = (fun(xp) - fun(xm)) / (2.0 * h)
        return J, 2 * n

    def minimize(self, residuals, x0, end_criteria=None):
        """Minimise the sum of squares of ``residuals(x)`` starting at ``x0``.

        Never raises on non-convergence: the returned ``end_criteria`` tells
        whether a tolerance test fired or a budget ran out.
        """
        ec = end_criteria or EndCriteria()

        def fun(v):
            return np.asarray(residuals(v), dtype=float).ravel()

        x = np.array(x0, dtype=float)
        r = fun(x)
        if not np.all(np.isfinite(r)):
            raise ValueError("Residuals are not finite at the starting point")
        cost = 0.5 * float(r @ r)
        evaluations = 1

        damping = self.initial_damping
        stalled = 0
        J = g = JtJ = scale = None
        end = EndCriteriaType.MAX_ITERATIONS
        iteration = 0

        while iteration < ec.max_iterations:
            iteration += 1
            if J is None:
                J, n_eval = self._jacobian(fun, x, r)
                evaluations += n_eval
                g = J.T @ r
                if np.max(np.abs(g)) <= ec.gradient_tolerance:
                    end = EndCriteriaType.GRADIENT_TOLERANCE
                    break
                JtJ = J.T @ J
                scale = np.diag(JtJ).copy()
                scale[scale <= 0.0] = 1.0

            try:
                delta = np.linalg.solve(JtJ + damping * np.diag(scale), -g)
            except np.linalg.LinAlgError:
                delta = None

            step_small = delta is not None and (
                np.linalg.norm(delta)
                <= ec.param_tolerance * (np.linalg.norm(x) + ec.param_tolerance)
            )

            accepted = False
            if delta is not None:
                x_new = x + delta
                with np.errstate(all="ignore"):
                    r_new = fun(x_new)
                evaluations += 1
                if np.all(np.isfinite(r_new)):
                    cost_new = 0.5 * float(r_new @ r_new)
                    accepted = cost_new < cost

            if accepted:
                actual = cost - cost_new
                predicted = -float(g @ delta + 0.5 * delta @ JtJ @ delta)
                prev_cost = cost
                x, r, cost = x_new, r_new, cost_new
                J = None
                stalled = 0
                damping = max(damping / 10.0, 1.0e-15)
                logger.debug(
                    "LM iteration %d: cost=%.6e damping=%.1e |step|=%.3e",
                    iteration, cost, damping, np.linalg.norm(delta),
                )
                if (actual <= ec.root_tolerance * prev_cost
                        and abs(predicted) <= ec.root_tolerance * prev_cost):
                    end = EndCriteriaType.FUNCTION_TOLERANCE
                    break
                if step_small:
                    end = EndCriteriaType.PARAM_TOLERANCE
                    break
            else:
                damping *= 10.0
                stalled += 1
                logger.debug("LM iteration %d: step rejected, damping=%.1e", iteration, damping)
                if step_small:
                    end = EndCriteriaType.PARAM_TOLERANCE
                    break
                if stalled >= ec.max_stalled_steps:
                    end = EndCriteriaType.STALLED_STEPS
                    break

        return OptimizationResult(
            x=x,
            cost=cost,
            residuals=r,
            iterations=iteration,
            evaluations=evaluations,
            end_criteria=end,
        )
