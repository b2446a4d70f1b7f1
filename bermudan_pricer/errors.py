"""Failure taxonomy of the pricing pipeline.

Every error carries enough context (node, instrument, iteration, grid) to be
diagnosed from the message alone.
"""


class PricingError(RuntimeError):
    """Base class for all failures raised by ``bermudan_pricer``."""


class CurveBootstrapError(PricingError):
    """A curve node could not be solved (no root, no convergence, DF <= 0)."""

    def __init__(self, tenor, reason):
        self.tenor = tenor
        self.reason = reason
        super().__init__(f"Curve bootstrap failed at node {tenor}: {reason}")


class CalibrationError(PricingError):
    """The optimizer ran out of iterations without meeting any tolerance.

    This is a soft failure: the calibrator keeps the best parameters found and
    attaches this error to its result instead of raising it.
    """

    def __init__(self, end_criteria, iterations, cost):
        self.end_criteria = end_criteria
        self.iterations = int(iterations)
        self.cost = float(cost)
        super().__init__(
            f"Calibration did not converge: stopped on {end_criteria.name} "
            f"after {self.iterations} iterations (cost={self.cost:.6e})"
        )


class PdeInstabilityError(PricingError):
    """The finite-difference discretisation violates its stability bound."""

    def __init__(self, ratio, bound, dt, dx, dy, condition="diffusion number"):
        self.ratio = float(ratio)
        self.bound = float(bound)
        self.dt = float(dt)
        self.dx = float(dx)
        self.dy = float(dy)
        self.condition = condition
        super().__init__(
            f"Unstable PDE discretisation: {condition} {self.ratio:.4g} exceeds "
            f"{self.bound:.4g} (dt={self.dt:.4g}, dx={self.dx:.4g}, dy={self.dy:.4g})"
        )


class ImpliedVolatilityError(PricingError):
    """The implied-volatility solver could not bracket or converge."""

    def __init__(self, instrument, target, reason):
        self.instrument = instrument
        self.target = float(target)
        self.reason = reason
        super().__init__(
            f"Implied volatility failed for {instrument} (target={self.target:.6g}): {reason}"
        )
