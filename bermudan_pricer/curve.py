"""OIS discount curve: sequential bootstrap on log-linear discount factors."""

import enum
import logging
from dataclasses import dataclass

import numpy as np
import QuantLib as ql
from scipy import optimize

from .errors import CurveBootstrapError
from .utils import DateUtils

logger = logging.getLogger(__name__)


class InstrumentKind(enum.Enum):
    OIS = "OIS"


@dataclass(frozen=True)
class CurveNode:
    tenor: ql.Period
    quote: object  # MarketQuote, shared by reference
    kind: InstrumentKind = InstrumentKind.OIS


class DiscountCurve:
    """Discount factors on pillar times with log-linear interpolation.

    Log-linear interpolation of discount factors is equivalent to piecewise
    constant instantaneous forwards. Beyond the last pillar the last forward is
    held flat when extrapolation is allowed.

    Parameters
    ----------
    reference_date : QuantLib.Date
        Date at which ``t = 0``.
    times, discounts : sequence of float
        Pillars, starting with ``(0, 1)``.
    day_counter : QuantLib.DayCounter
        Converts dates into curve times.
    quotes : sequence, optional
        Quotes the curve was built from; their versions are recorded so
        ``is_stale`` can tell when a rebuild is required.
    """

    def __init__(self, reference_date, times, discounts, day_counter=None,
                 allow_extrapolation=False, quotes=()):
        times = np.asarray(times, dtype=float)
        discounts = np.asarray(discounts, dtype=float)
        if times.ndim != 1 or times.shape != discounts.shape or len(times) < 2:
            raise ValueError("Need matching 1-d arrays with at least two pillars")
        if times[0] != 0.0 or discounts[0] != 1.0:
            raise ValueError("The first pillar must be (0, 1)")
        if np.any(np.diff(times) <= 0.0):
            raise ValueError("Pillar times must be strictly increasing")
        if np.any(~np.isfinite(discounts)) or np.any(discounts <= 0.0):
            raise ValueError("Discount factors must be strictly positive")

        increasing = np.where(np.diff(discounts) > 0.0)[0]
        for i in increasing:
            logger.warning(
                "Discount factor increases between t=%.4f and t=%.4f (negative forward rate)",
                times[i], times[i + 1],
            )

        self.reference_date = reference_date
        self.day_counter = day_counter or ql.Actual360()
        self.allow_extrapolation = bool(allow_extrapolation)
        self.times = times
        self.discounts = discounts
        self._log_dfs = np.log(discounts)
        self._quote_versions = [(q, q.version) for q in quotes]

    @property
    def max_time(self):
        return float(self.times[-1])

    def nodes(self):
        return list(zip(self.times.tolist(), self.discounts.tolist()))

    def is_stale(self):
        """True when any quote changed since the curve was built."""
        return any(q.version != v for q, v in self._quote_versions)

    def time_from_reference(self, d):
        return float(self.day_counter.yearFraction(self.reference_date, DateUtils.to_ql_date(d)))

    def discount(self, t):
        t_arr = np.asarray(t, dtype=float)
        if np.any(t_arr < 0.0):
            raise ValueError("Negative time passed to discount()")
        beyond = t_arr > self.times[-1]
        if np.any(beyond) and not self.allow_extrapolation:
            raise ValueError(
                f"Time {float(np.max(t_arr)):.6f} beyond last pillar "
                f"{self.max_time:.6f} and extrapolation is disabled"
            )

        log_df = np.interp(t_arr, self.times, self._log_dfs)
        if np.any(beyond):
            f_last = -(self._log_dfs[-1] - self._log_dfs[-2]) / (self.times[-1] - self.times[-2])
            log_df = np.where(beyond, self._log_dfs[-1] - f_last * (t_arr - self.times[-1]), log_df)

        out = np.exp(log_df)
        return float(out) if out.ndim == 0 else out

    def discount_date(self, d):
        return self.discount(self.time_from_reference(d))

    def instantaneous_forward(self, t):
        t_arr = np.asarray(t, dtype=float)
        slopes = -np.diff(self._log_dfs) / np.diff(self.times)
        idx = np.clip(np.searchsorted(self.times, t_arr, side="right") - 1, 0, len(slopes) - 1)
        out = slopes[idx]
        return float(out) if out.ndim == 0 else out

    def forward_rate(self, t1, t2):
        """Continuously compounded forward rate between ``t1`` and ``t2``."""
        if t2 <= t1:
            raise ValueError("forward_rate requires t2 > t1")
        return float(np.log(self.discount(t1) / self.discount(t2)) / (t2 - t1))

    def zero_rate(self, t):
        if t <= 0.0:
            return self.instantaneous_forward(0.0)
        return float(-np.log(self.discount(t)) / t)


@dataclass
class _OISInstrument:
    node: CurveNode
    start: float
    maturity: float
    payment_times: np.ndarray
    accruals: np.ndarray


class OISBootstrapper:
    """Bootstrap a discount curve from OIS quotes.

    Single-curve setting: the overnight index is projected off the curve being
    built, so the compounded floating leg is worth ``P(start) - P(end)``. Each
    pillar (the OIS maturity) is solved with Brent's method on the log
    discount factor while all earlier pillars are held fixed. Coupon dates in
    between are valued on the log-linear interpolant through the trial point.
    """

    # Bracket on the pillar zero rate
    MIN_ZERO_RATE = -0.5
    MAX_ZERO_RATE = 3.0

    def __init__(self, cfg):
        self.cfg = cfg
        self.reference_date = cfg.val_date
        self.day_counter = cfg.curve_day_count
        self.calendar = cfg.calendar

    @staticmethod
    def sorted_nodes(nodes):
        nodes = sorted(nodes, key=lambda n: DateUtils.period_years(n.tenor))
        for prev, nxt in zip(nodes, nodes[1:]):
            if abs(DateUtils.period_years(prev.tenor) - DateUtils.period_years(nxt.tenor)) < 1.0e-9:
                raise ValueError(f"Duplicate curve tenor {nxt.tenor}")
        for n in nodes:
            if n.kind is not InstrumentKind.OIS:
                raise ValueError(f"Unsupported curve instrument {n.kind}")
        return nodes

    def _time(self, d):
        return float(self.day_counter.yearFraction(self.reference_date, d))

    def _instrument(self, node):
        start = self.calendar.advance(self.reference_date, int(self.cfg.settlement_days), ql.Days)
        end = self.calendar.advance(start, node.tenor, ql.ModifiedFollowing)

        if DateUtils.period_years(node.tenor) <= 1.0:
            dates = [start, end]
        else:
            schedule = ql.Schedule(
                start, end, ql.Period(ql.Annual), self.calendar,
                ql.ModifiedFollowing, ql.ModifiedFollowing,
                ql.DateGeneration.Backward, False,
            )
            dates = list(schedule)

        fixed_dc = self.cfg.ois_fixed_day_count
        accruals = np.array([fixed_dc.yearFraction(d0, d1) for d0, d1 in zip(dates[:-1], dates[1:])])
        payments = np.array([self._time(d) for d in dates[1:]])
        return _OISInstrument(node, self._time(start), self._time(end), payments, accruals)

    @staticmethod
    def _npv(inst, log_discount):
        """Receive-fixed NPV per unit notional given a log-DF function of time."""
        rate = inst.node.quote.value
        fixed = rate * np.sum(inst.accruals * np.exp(log_discount(inst.payment_times)))
        floating = np.exp(log_discount(inst.start)) - np.exp(log_discount(inst.maturity))
        return float(fixed - floating)

    def bootstrap(self, nodes):
        nodes = self.sorted_nodes(nodes)
        if not nodes:
            raise ValueError("At least one curve node is required")

        times = [0.0]
        log_dfs = [0.0]
        for node in nodes:
            inst = self._instrument(node)
            if inst.maturity <= times[-1]:
                raise CurveBootstrapError(node.tenor, "pillar does not extend the curve")

            def objective(log_df, inst=inst):
                t_arr = np.array(times + [inst.maturity])
                l_arr = np.array(log_dfs + [log_df])
                return self._npv(inst, lambda t: np.interp(t, t_arr, l_arr))

            lo = -self.MAX_ZERO_RATE * inst.maturity
            hi = -self.MIN_ZERO_RATE * inst.maturity
            try:
                root, res = optimize.brentq(
                    objective, lo, hi,
                    xtol=float(self.cfg.bootstrap_accuracy),
                    maxiter=int(self.cfg.bootstrap_max_iterations),
                    full_output=True, disp=False,
                )
            except ValueError as exc:
                raise CurveBootstrapError(node.tenor, f"root not bracketed ({exc})") from exc
            if not res.converged:
                raise CurveBootstrapError(
                    node.tenor, f"no convergence after {res.iterations} iterations ({res.flag})"
                )

            df = float(np.exp(root))
            if not np.isfinite(df) or df <= 0.0:
                raise CurveBootstrapError(node.tenor, f"non-positive discount factor {df}")

            logger.debug("Pillar %s: t=%.6f df=%.10f", node.tenor, inst.maturity, df)
            times.append(inst.maturity)
            log_dfs.append(root)

        curve = DiscountCurve(
            self.reference_date, times, np.exp(log_dfs), self.day_counter,
            allow_extrapolation=self.cfg.allow_extrapolation,
            quotes=[n.quote for n in nodes],
        )
        logger.info("Bootstrapped OIS curve with %d nodes up to t=%.4f", len(nodes), curve.max_time)
        return curve

    def ois_npv(self, node, curve):
        """Re-price one OIS node on a given curve (should be ~0 on its own curve)."""
        inst = self._instrument(node)
        return self._npv(inst, lambda t: np.log(curve.discount(t)))
