from dataclasses import dataclass, field

import pandas as pd
import QuantLib as ql

from .curve import CurveNode, InstrumentKind
from .utils import DateUtils

# Reference dataset: SOFR OIS quotes and ATM swaption lognormal vols, 30-Aug-2023.
REFERENCE_DATE = (30, 8, 2023)

REFERENCE_OIS = [
    ("3M", 0.05417),
    ("6M", 0.05494),
    ("12M", 0.05480),
    ("2Y", 0.04949),
    ("3Y", 0.04598),
    ("4Y", 0.04371),
    ("5Y", 0.04231),
    ("7Y", 0.04068),
]

REFERENCE_OPTION_TENORS = ["1Y", "2Y", "3Y", "4Y", "5Y", "7Y"]
REFERENCE_SWAP_TENORS = ["1Y", "2Y", "3Y", "4Y", "5Y", "7Y"]

REFERENCE_VOLS = [
    [0.3556, 0.3742, 0.3734, 0.3664, 0.3561, 0.3428],
    [0.3936, 0.3901, 0.3802, 0.3682, 0.3557, 0.3382],
    [0.3834, 0.3728, 0.3643, 0.3560, 0.3471, 0.3270],
    [0.3643, 0.3502, 0.3407, 0.3306, 0.3202, 0.3024],
    [0.3378, 0.3261, 0.3174, 0.3082, 0.2994, 0.2853],
    [0.2863, 0.2792, 0.2737, 0.2672, 0.2620, 0.2564],
]


class MarketQuote:
    """Observable market value shared by reference.

    Every change bumps ``version``. Objects built from quotes record the
    versions they saw and report themselves stale when any of them moved; the
    pipeline then rebuilds from scratch. Nothing is invalidated implicitly.
    """

    def __init__(self, value):
        self._value = float(value)
        self._version = 0

    @property
    def value(self):
        return self._value

    @property
    def version(self):
        return self._version

    def set_value(self, value):
        value = float(value)
        if value != self._value:
            self._value = value
            self._version += 1
        return self

    def __repr__(self):
        return f"MarketQuote({self._value!r})"


@dataclass
class MarketData:
    """In-memory market snapshot handed to the pipeline."""

    evaluation_date: ql.Date
    ois_nodes: list
    # (expiry_period, tenor_period, MarketQuote)
    swaption_vols: list = field(default_factory=list)

    def quotes(self):
        out = [n.quote for n in self.ois_nodes]
        out.extend(q for _, _, q in self.swaption_vols)
        return out

    def vol_matrix(self):
        """Volatility grid as a DataFrame (rows: option tenor, cols: swap tenor)."""
        rows = {}
        for exp, ten, q in self.swaption_vols:
            rows.setdefault(str(exp), {})[str(ten)] = q.value
        return pd.DataFrame.from_dict(rows, orient="index")


class MarketLoader:
    """Load market inputs (OIS quotes + swaption volatility matrix).

    The loader is intentionally permissive regarding column names so that
    different OIS exports can be used without reformatting.
    """

    def __init__(self, cfg):
        self.cfg = cfg
        ql.Settings.instance().evaluationDate = cfg.val_date

    @staticmethod
    def ois_nodes(quotes):
        """Build OIS curve nodes from ``{tenor: rate}`` or ``[(tenor, rate)]``.

        Rates may be floats or ``MarketQuote`` objects; the latter are kept by
        reference so later updates are visible to staleness checks.
        """
        items = quotes.items() if isinstance(quotes, dict) else quotes
        nodes = []
        for tenor, rate in items:
            q = rate if isinstance(rate, MarketQuote) else MarketQuote(rate)
            nodes.append(CurveNode(DateUtils.parse_period(tenor), q, InstrumentKind.OIS))
        return nodes

    @staticmethod
    def vols_from_matrix(option_tenors, swap_tenors, values):
        """Flatten a volatility matrix into (expiry, tenor, quote) triples."""
        data = []
        for i, exp in enumerate(option_tenors):
            for j, ten in enumerate(swap_tenors):
                data.append(
                    (
                        DateUtils.parse_period(exp),
                        DateUtils.parse_period(ten),
                        MarketQuote(values[i][j]),
                    )
                )
        return data

    def load_ois(self, path):
        """Load OIS quotes from a CSV with a tenor column and a rate column.

        Rates given in percent (any value above 1) are converted to decimals.
        """
        df = pd.read_csv(path)
        col_tenor = next((c for c in df.columns if "tenor" in c.lower() or "prazo" in c.lower()), None)
        col_rate = next(
            (c for c in df.columns if "rate" in c.lower() or "taxa" in c.lower() or "quote" in c.lower()),
            None,
        )
        if col_tenor is None or col_rate is None:
            raise ValueError("OIS CSV must contain a tenor column and a rate column.")

        rates = df[col_rate].astype(float)
        if (rates.abs() > 1.0).any():
            rates = rates / 100.0
        return self.ois_nodes(list(zip(df[col_tenor].astype(str), rates)))

    def load_vols(self, path):
        """Load a swaption vol matrix (first column: option tenor, header: swap tenors).

        Returns
        -------
        list
            List of (expiry_period, tenor_period, MarketQuote). Empty cells are skipped.
        """
        df = pd.read_csv(path)
        if df.empty:
            return []
        df = df.set_index(df.columns[0])

        data = []
        for idx_row, row in df.iterrows():
            for idx_col, val in row.items():
                if pd.isna(val):
                    continue
                data.append(
                    (
                        DateUtils.parse_period(idx_row),
                        DateUtils.parse_period(idx_col),
                        MarketQuote(float(val)),
                    )
                )
        return data

    def load(self, ois_path, vols_path):
        return MarketData(self.cfg.val_date, self.load_ois(ois_path), self.load_vols(vols_path))

    @staticmethod
    def reference_market():
        """The 8 SOFR OIS quotes and the 6x6 vol grid of 30 August 2023."""
        return MarketData(
            ql.Date(*REFERENCE_DATE),
            MarketLoader.ois_nodes(REFERENCE_OIS),
            MarketLoader.vols_from_matrix(
                REFERENCE_OPTION_TENORS, REFERENCE_SWAP_TENORS, REFERENCE_VOLS
            ),
        )
