import QuantLib as ql
import pandas as pd


def us_calendar():
    """Return a *generic* United States calendar.

    Different QuantLib builds expose different market enums, so the broadest
    available one is picked.
    """
    if hasattr(ql.UnitedStates, "Settlement"):
        return ql.UnitedStates(ql.UnitedStates.Settlement)
    if hasattr(ql.UnitedStates, "GovernmentBond"):
        return ql.UnitedStates(ql.UnitedStates.GovernmentBond)
    return ql.UnitedStates()


def us_sofr_calendar():
    """Return the United States SOFR calendar if available (fallback to US)."""
    if hasattr(ql.UnitedStates, "SOFR"):
        return ql.UnitedStates(ql.UnitedStates.SOFR)
    return us_calendar()


_UNITS_PER_YEAR = {
    ql.Days: 365.0,
    ql.Weeks: 365.0 / 7.0,
    ql.Months: 12.0,
    ql.Years: 1.0,
}


class DateUtils:
    """Small helpers to keep date/period parsing in one place."""

    @staticmethod
    def to_ql_date(d):
        """Convert common Python date representations into QuantLib.Date."""
        if isinstance(d, ql.Date):
            return d
        if isinstance(d, str):
            d = pd.to_datetime(d).date()
        return ql.Date(d.day, d.month, d.year)

    @staticmethod
    def parse_period(s):
        """Parse strings such as '1Mo', '3Mo', '1Yr', '10Yr', '6M', '1Y'."""
        if isinstance(s, ql.Period):
            return s
        s = str(s).strip().upper()
        # Normalize common suffixes
        s = s.replace("MONTH", "M").replace("MO", "M")
        s = s.replace("YEAR", "Y").replace("YR", "Y")
        if s.endswith("M"):
            return ql.Period(int(s[:-1]), ql.Months)
        if s.endswith("Y"):
            return ql.Period(int(s[:-1]), ql.Years)
        # QuantLib's own parser handles weeks/days ('2W', '1D')
        return ql.Period(s)

    @staticmethod
    def ensure_period(freq_or_period):
        """Convert Frequency/Period/string to QuantLib.Period."""
        if isinstance(freq_or_period, ql.Period):
            return freq_or_period
        if isinstance(freq_or_period, str):
            return DateUtils.parse_period(freq_or_period)
        # QuantLib Frequency is an int enum (e.g. ql.Quarterly)
        return ql.Period(freq_or_period)

    @staticmethod
    def period_years(period):
        """Approximate length of a period in years (ordering and labels only)."""
        p = DateUtils.ensure_period(period)
        return p.length() / _UNITS_PER_YEAR[p.units()]

    @staticmethod
    def period_label(period):
        """Compact label used in reports: 1Y -> '1', 18M -> '18M'."""
        p = DateUtils.ensure_period(period)
        if p.units() == ql.Years:
            return str(p.length())
        if p.units() == ql.Months and p.length() % 12 == 0:
            return str(p.length() // 12)
        return str(p)
