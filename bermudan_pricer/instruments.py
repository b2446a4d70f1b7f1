from collections import namedtuple
from dataclasses import dataclass, field

import numpy as np
import QuantLib as ql

from .utils import DateUtils, us_sofr_calendar

_TIME_EPS = 1.0e-10

Coupon = namedtuple("Coupon", ["accrual_start", "accrual_end", "payment_date", "amount"])


@dataclass
class SwapSpec:
    """Specification of a fixed-vs-overnight interest-rate swap.

    The floating leg compounds the overnight index projected off the same
    curve used for discounting (single-curve setting), so its value between
    two dates is ``notional * (P(start) - P(end))``.

    Notes
    -----
    - ``payer=True`` pays fixed and receives floating.
    - Both legs share ``calendar``, ``business_convention`` and
      ``date_generation``; payments fall on the adjusted accrual end dates.
    """

    payer: bool
    notional: float
    fixed_rate: float
    start_date: object
    maturity_date: object

    fixed_frequency: object = ql.Quarterly
    float_frequency: object = ql.Quarterly
    fixed_day_count: object = field(default_factory=ql.Actual360)
    float_day_count: object = field(default_factory=ql.Actual360)
    calendar: object = field(default_factory=us_sofr_calendar)
    business_convention: object = ql.ModifiedFollowing
    date_generation: object = ql.DateGeneration.Forward
    end_of_month: bool = False

    def __post_init__(self):
        self.start_date = DateUtils.to_ql_date(self.start_date)
        self.maturity_date = DateUtils.to_ql_date(self.maturity_date)
        if self.maturity_date <= self.start_date:
            raise ValueError("Swap maturity must be after its start date")
        if self.notional <= 0.0:
            raise ValueError("Swap notional must be positive")

    # ---------------------------------------------------------------------
    # Schedules and cash flows
    # ---------------------------------------------------------------------
    def _schedule(self, frequency):
        return ql.Schedule(
            self.start_date,
            self.maturity_date,
            DateUtils.ensure_period(frequency),
            self.calendar,
            self.business_convention,
            self.business_convention,
            self.date_generation,
            bool(self.end_of_month),
        )

    def fixed_schedule(self):
        return self._schedule(self.fixed_frequency)

    def float_schedule(self):
        return self._schedule(self.float_frequency)

    def fixed_coupons(self):
        dates = list(self.fixed_schedule())
        out = []
        for d0, d1 in zip(dates[:-1], dates[1:]):
            accrual = self.fixed_day_count.yearFraction(d0, d1)
            out.append(Coupon(d0, d1, d1, float(self.notional * self.fixed_rate * accrual)))
        return out

    def float_coupons(self, curve):
        """Floating coupons with amounts projected off ``curve``."""
        dates = list(self.float_schedule())
        out = []
        for d0, d1 in zip(dates[:-1], dates[1:]):
            growth = curve.discount_date(d0) / curve.discount_date(d1)
            out.append(Coupon(d0, d1, d1, float(self.notional * (growth - 1.0))))
        return out

    # ---------------------------------------------------------------------
    # Discounting valuation
    # ---------------------------------------------------------------------
    def annuity(self, curve):
        """Fixed-leg PV of a unit rate."""
        return sum(
            self.notional * self.fixed_day_count.yearFraction(c.accrual_start, c.accrual_end)
            * curve.discount_date(c.payment_date)
            for c in self.fixed_coupons()
        )

    def float_leg_npv(self, curve):
        dates = list(self.float_schedule())
        return self.notional * (curve.discount_date(dates[0]) - curve.discount_date(dates[-1]))

    def fixed_leg_npv(self, curve):
        return sum(c.amount * curve.discount_date(c.payment_date) for c in self.fixed_coupons())

    def npv(self, curve):
        value = self.float_leg_npv(curve) - self.fixed_leg_npv(curve)
        return float(value if self.payer else -value)

    def fair_rate(self, curve):
        return float(self.float_leg_npv(curve) / self.annuity(curve))


@dataclass(frozen=True, eq=False)
class SwaptionData:
    """Time-based view of a swaption consumed by the pricing engines.

    All times are curve times (year fractions from the curve reference date).
    Exercise ``k`` enters the swap made of every fixed coupon whose accrual
    starts at or after the exercise time and of the floating leg from the
    first floating accrual start at or after it.
    """

    payer: bool
    notional: float
    exercise_times: np.ndarray
    fixed_start_times: np.ndarray
    fixed_pay_times: np.ndarray
    fixed_amounts: np.ndarray
    float_start_times: np.ndarray
    float_end_time: float

    def __post_init__(self):
        for name in ("exercise_times", "fixed_start_times", "fixed_pay_times",
                     "fixed_amounts", "float_start_times"):
            object.__setattr__(self, name, np.asarray(getattr(self, name), dtype=float))
        object.__setattr__(self, "float_end_time", float(self.float_end_time))
        ex = self.exercise_times
        if ex.size == 0:
            raise ValueError("A swaption needs at least one exercise time")
        if np.any(np.diff(ex) <= 0.0):
            raise ValueError("Exercise times must be strictly increasing")
        if ex[-1] > self.float_end_time:
            raise ValueError("Exercise after the end of the underlying swap")

    def times(self):
        """Mandatory times of the lattice engines."""
        return self.exercise_times.tolist()

    @property
    def is_european(self):
        return len(self.exercise_times) == 1

    def _legs_from(self, t):
        fixed = self.fixed_start_times >= t - _TIME_EPS
        s = int(np.searchsorted(self.float_start_times, t - _TIME_EPS))
        if s >= len(self.float_start_times):
            raise ValueError(f"No floating period starts at or after t={t}")
        return fixed, float(self.float_start_times[s])

    def exercise_value(self, model, k, x, y):
        """Value at exercise ``k`` of the remaining swap, vectorised over (x, y)."""
        t = float(self.exercise_times[k])
        fixed, float_start = self._legs_from(t)
        value = self.notional * (
            model.discount_bond(t, float_start, x, y)
            - model.discount_bond(t, self.float_end_time, x, y)
        )
        for T, amount in zip(self.fixed_pay_times[fixed], self.fixed_amounts[fixed]):
            value = value - amount * model.discount_bond(t, T, x, y)
        return value if self.payer else -value

    def bond_coefficients(self, k=0):
        """Coupon-bond representation of the swap entered at exercise ``k``.

        Returns payment times and coefficients ``c_i`` (per unit notional) so
        that the payer swap is worth ``1 - sum_i c_i P(t_k, T_i)``. Requires
        the floating leg to start on the exercise time.
        """
        t = float(self.exercise_times[k])
        fixed, float_start = self._legs_from(t)
        if abs(float_start - t) > _TIME_EPS:
            raise ValueError("The floating leg must start on the exercise time")
        times = list(self.fixed_pay_times[fixed])
        coeffs = list(self.fixed_amounts[fixed] / self.notional)
        if times and abs(times[-1] - self.float_end_time) <= _TIME_EPS:
            coeffs[-1] += 1.0
        else:
            times.append(self.float_end_time)
            coeffs.append(1.0)
        return np.array(times), np.array(coeffs)


@dataclass
class BermudanSwaptionSpec:
    """Bermudan option to enter ``swap`` on any of ``exercise_dates``.

    Exercise dates must be strictly increasing, no later than the swap
    maturity and aligned with fixed-leg accrual start dates.
    """

    swap: SwapSpec
    exercise_dates: list

    def __post_init__(self):
        self.exercise_dates = [DateUtils.to_ql_date(d) for d in self.exercise_dates]
        if not self.exercise_dates:
            raise ValueError("At least one exercise date is required")
        for d0, d1 in zip(self.exercise_dates, self.exercise_dates[1:]):
            if d1 <= d0:
                raise ValueError("Exercise dates must be strictly increasing")
        if self.exercise_dates[-1] > self.swap.maturity_date:
            raise ValueError("Exercise dates must not exceed the swap maturity")
        starts = {c.accrual_start.serialNumber() for c in self.swap.fixed_coupons()}
        for d in self.exercise_dates:
            if d.serialNumber() not in starts:
                raise ValueError(f"Exercise date {d} is not a fixed accrual start")

    @classmethod
    def from_swap(cls, swap):
        """Exercise on every fixed accrual start date."""
        return cls(swap, [c.accrual_start for c in swap.fixed_coupons()])

    def to_engine_data(self, curve):
        """Times and amounts for the engines; past exercise dates are dropped."""
        ref = curve.reference_date
        exercises = [d for d in self.exercise_dates if d > ref]
        if not exercises:
            raise ValueError("All exercise dates are on or before the curve reference date")

        fixed = self.swap.fixed_coupons()
        float_dates = list(self.swap.float_schedule())
        tf = curve.time_from_reference
        return SwaptionData(
            payer=bool(self.swap.payer),
            notional=float(self.swap.notional),
            exercise_times=np.array([tf(d) for d in exercises]),
            fixed_start_times=np.array([tf(c.accrual_start) for c in fixed]),
            fixed_pay_times=np.array([tf(c.payment_date) for c in fixed]),
            fixed_amounts=np.array([c.amount for c in fixed]),
            float_start_times=np.array([tf(d) for d in float_dates[:-1]]),
            float_end_time=tf(float_dates[-1]),
        )


def reference_bermudan(cfg):
    """3Y payer Bermudan on 10,000 notional at 6.6%, quarterly legs, Act/360.

    The swap starts one business day after the evaluation date and can be
    entered on every fixed accrual start.
    """
    cal = cfg.calendar
    settlement = cal.advance(cfg.val_date, 1, ql.Days)
    maturity = cal.advance(settlement, 3, ql.Years, ql.ModifiedFollowing)
    swap = SwapSpec(
        payer=True,
        notional=10000.0,
        fixed_rate=0.066,
        start_date=settlement,
        maturity_date=maturity,
        fixed_frequency=ql.Quarterly,
        float_frequency=ql.Quarterly,
        fixed_day_count=ql.Actual360(),
        float_day_count=ql.Actual360(),
        calendar=cal,
        business_convention=ql.ModifiedFollowing,
        date_generation=ql.DateGeneration.Forward,
    )
    return BermudanSwaptionSpec.from_swap(swap)
