import enum
import logging
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
import QuantLib as ql
from scipy import optimize

from .black import swaption_market_value
from .engines import G2AnalyticSwaptionEngine
from .errors import CalibrationError, ImpliedVolatilityError
from .instruments import BermudanSwaptionSpec, SwapSpec
from .model import G2Params
from .optimization import EndCriteriaType, LevenbergMarquardt
from .utils import DateUtils

logger = logging.getLogger(__name__)

# Implied-vol search used inside the IMPLIED_VOL objective
_OBJECTIVE_IV_ACCURACY = 1.0e-10
_OBJECTIVE_IV_BOUNDS = (1.0e-4, 5.0)


class CalibrationErrorType(enum.Enum):
    PRICE = "PRICE"
    RELATIVE_PRICE = "RELATIVE_PRICE"
    IMPLIED_VOL = "IMPLIED_VOL"


class VolatilityType(enum.Enum):
    SHIFTED_LOGNORMAL = "SHIFTED_LOGNORMAL"
    NORMAL = "NORMAL"


class SwaptionHelper:
    """ATM European swaption quoted by volatility, used as a calibration target.

    The option expires ``maturity`` after the curve reference date (calendar
    adjusted, Modified Following) and delivers a ``tenor`` swap starting on
    the expiry date, with a fixed leg paid at ``fixed_frequency`` on
    ``fixed_day_count`` and struck at the forward swap rate.

    The volatility quote is held by reference: a change of ``volatility``
    changes ``market_value()`` on the next call.
    """

    def __init__(self, maturity, tenor, volatility, curve, calendar,
                 fixed_frequency=ql.Annual, fixed_day_count=None,
                 volatility_type=VolatilityType.SHIFTED_LOGNORMAL, shift=0.0,
                 error_type=CalibrationErrorType.RELATIVE_PRICE):
        self.maturity = DateUtils.parse_period(maturity)
        self.tenor = DateUtils.parse_period(tenor)
        self.volatility = volatility
        self.curve = curve
        self.volatility_type = VolatilityType(volatility_type)
        self.shift = float(shift)
        self.error_type = CalibrationErrorType(error_type)
        self.engine = None

        ref = curve.reference_date
        self.exercise_date = calendar.advance(ref, self.maturity, ql.ModifiedFollowing)
        end = calendar.advance(self.exercise_date, self.tenor, ql.ModifiedFollowing)
        swap = SwapSpec(
            payer=True,
            notional=1.0,
            fixed_rate=0.0,
            start_date=self.exercise_date,
            maturity_date=end,
            fixed_frequency=fixed_frequency,
            float_frequency=fixed_frequency,
            fixed_day_count=fixed_day_count or ql.Actual360(),
            float_day_count=fixed_day_count or ql.Actual360(),
            calendar=calendar,
            business_convention=ql.ModifiedFollowing,
            date_generation=ql.DateGeneration.Backward,
        )
        swap.fixed_rate = swap.fair_rate(curve)
        self.swap = swap
        self.strike = swap.fixed_rate
        self.annuity = swap.annuity(curve)
        self.expiry = ql.Actual365Fixed().yearFraction(ref, self.exercise_date)
        self.data = BermudanSwaptionSpec(swap, [self.exercise_date]).to_engine_data(curve)

    @property
    def label(self):
        return f"{DateUtils.period_label(self.maturity)}x{DateUtils.period_label(self.tenor)}"

    def __repr__(self):
        return f"SwaptionHelper({self.label}, vol={self.volatility.value:.4f})"

    def set_pricing_engine(self, engine):
        self.engine = engine

    def times(self):
        """Exercise and payment times (for a shared TimeGrid)."""
        return [float(self.data.exercise_times[0])] + self.data.fixed_pay_times.tolist()

    def black_price(self, vol):
        return swaption_market_value(
            self.annuity, self.strike, self.strike, vol, self.expiry,
            payer=True, vol_type=self.volatility_type.value, shift=self.shift,
        )

    def market_value(self):
        return self.black_price(self.volatility.value)

    def model_value(self):
        if self.engine is None:
            raise ValueError(f"No pricing engine set for swaption {self.label}")
        return self.engine.price(self.data)

    def calibration_error(self):
        model = self.model_value()
        if self.error_type is CalibrationErrorType.IMPLIED_VOL:
            try:
                vol = self.implied_volatility(
                    model, _OBJECTIVE_IV_ACCURACY, 1000, *_OBJECTIVE_IV_BOUNDS
                )
            except ImpliedVolatilityError:
                # rejected by the optimizer as a non-finite residual
                return float("nan")
            return vol - self.volatility.value

        market = self.market_value()
        if self.error_type is CalibrationErrorType.RELATIVE_PRICE and market > 0.0:
            return (model - market) / market
        return model - market

    def implied_volatility(self, target, accuracy=1.0e-4, max_evaluations=1000,
                           min_vol=0.05, max_vol=0.50):
        """Volatility for which the quoting formula returns ``target``.

        Raises
        ------
        ImpliedVolatilityError
            If the root is not bracketed by ``[min_vol, max_vol]`` (a zero
            target always is not) or the solver does not converge.
        """
        def objective(vol):
            return self.black_price(vol) - target

        try:
            root, res = optimize.brentq(
                objective, min_vol, max_vol,
                xtol=accuracy, maxiter=int(max_evaluations),
                full_output=True, disp=False,
            )
        except ValueError as exc:
            raise ImpliedVolatilityError(
                self.label, target, f"root not bracketed in [{min_vol}, {max_vol}]"
            ) from exc
        if not res.converged:
            raise ImpliedVolatilityError(
                self.label, target, f"no convergence after {res.iterations} evaluations"
            )
        return float(root)


@dataclass
class CalibrationResult:
    params: G2Params
    end_criteria: EndCriteriaType
    iterations: int
    cost: float
    report: pd.DataFrame = field(default_factory=pd.DataFrame)
    error: CalibrationError = None

    @property
    def converged(self):
        return self.error is None

    def raise_for_status(self):
        if self.error is not None:
            raise self.error
        return self


class Calibrator:
    """G2 calibration to ATM swaption volatilities.

    The helpers are priced with the closed-form G2 engine and the five model
    parameters are fitted by Levenberg-Marquardt in an unconstrained
    parametrisation (log for the positive ones, artanh for rho). The model is
    updated in place; nothing else mutates model parameters.
    """

    def __init__(self, curve, cfg):
        self.curve = curve
        self.cfg = cfg

    def helper(self, maturity, tenor, quote):
        cfg = self.cfg
        return SwaptionHelper(
            maturity,
            tenor,
            quote,
            self.curve,
            cfg.calendar,
            fixed_frequency=cfg.swaption_fixed_frequency,
            fixed_day_count=cfg.swaption_fixed_day_count,
            volatility_type=cfg.volatility_type,
            shift=cfg.volatility_shift,
            error_type=cfg.calibration_error_type,
        )

    def swaption_helpers(self, vols, diagonal=True):
        """Build helpers from ``(expiry, tenor, quote)`` triples.

        With ``diagonal=True`` only the anti-diagonal of the (square) grid is
        used: option row ``i`` pairs with swap column ``n - 1 - i``, which on
        the reference grid gives 1x7, 2x5, 3x4, 4x3, 5x2 and 7x1.
        """
        if not diagonal:
            return [self.helper(e, t, q) for e, t, q in vols]

        def ordered(periods):
            unique = {DateUtils.period_years(p): p for p in periods}
            return [unique[k] for k in sorted(unique)]

        expiries = ordered([e for e, _, _ in vols])
        tenors = ordered([t for _, t, _ in vols])
        if len(expiries) != len(tenors):
            raise ValueError(
                f"Anti-diagonal selection needs a square grid, got "
                f"{len(expiries)}x{len(tenors)}"
            )
        lookup = {(DateUtils.period_years(e), DateUtils.period_years(t)): q for e, t, q in vols}

        helpers = []
        n = len(expiries)
        for i, exp in enumerate(expiries):
            ten = tenors[n - 1 - i]
            key = (DateUtils.period_years(exp), DateUtils.period_years(ten))
            if key not in lookup:
                raise ValueError(f"Missing volatility quote for {exp}x{ten}")
            helpers.append(self.helper(exp, ten, lookup[key]))
        return helpers

    def calibrate_g2(self, model, helpers, end_criteria=None, optimizer=None):
        """Fit the model to the helpers; returns a ``CalibrationResult``.

        Running out of iterations or stalled steps is a soft failure: the best
        parameters are kept in the model and the ``CalibrationError`` is
        attached to the result instead of being raised.
        """
        if not helpers:
            raise ValueError("No calibration instruments")
        cfg = self.cfg
        end_criteria = end_criteria or cfg.end_criteria()
        optimizer = optimizer or LevenbergMarquardt(jacobian=cfg.jacobian)

        for h in helpers:
            if h.engine is None:
                h.set_pricing_engine(
                    G2AnalyticSwaptionEngine(model, cfg.analytic_range, cfg.analytic_intervals)
                )

        def residuals(u):
            model.set_params(G2Params.from_unconstrained(u))
            return np.array([h.calibration_error() for h in helpers])

        x0 = model.params.to_unconstrained()
        res = optimizer.minimize(residuals, x0, end_criteria)
        model.set_params(G2Params.from_unconstrained(res.x))

        error = None
        if not res.converged:
            error = CalibrationError(res.end_criteria, res.iterations, res.cost)
            logger.warning("%s; keeping the best parameters found", error)
        logger.info(
            "G2 calibration finished: %s after %d iterations (cost=%.6e)",
            res.end_criteria.name, res.iterations, res.cost,
        )

        return CalibrationResult(
            params=model.params,
            end_criteria=res.end_criteria,
            iterations=res.iterations,
            cost=res.cost,
            report=self.report(helpers),
            error=error,
        )

    def report(self, helpers):
        """Model vs market implied volatility per helper.

        A failed implied-volatility search is recorded on its row (``NaN``
        model vol and the error message) instead of aborting the report.
        """
        cfg = self.cfg
        rows = []
        for h in helpers:
            model_value = h.model_value()
            market_vol = h.volatility.value
            try:
                model_vol = h.implied_volatility(
                    model_value, cfg.iv_accuracy, cfg.iv_max_evaluations,
                    cfg.iv_min_vol, cfg.iv_max_vol,
                )
                message = None
            except ImpliedVolatilityError as exc:
                logger.warning("%s", exc)
                model_vol = float("nan")
                message = str(exc)
            rows.append(
                {
                    "instrument": h.label,
                    "model_value": model_value,
                    "market_value": h.market_value(),
                    "model_vol": model_vol,
                    "market_vol": market_vol,
                    "diff": model_vol - market_vol,
                    "error": message,
                }
            )
        return pd.DataFrame(rows)
