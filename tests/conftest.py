import os
import sys

import pytest
import QuantLib as ql

# Allow running tests without installing the package.
BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if BASE_DIR not in sys.path:
    sys.path.insert(0, BASE_DIR)

from bermudan_pricer import AppConfig, G2Model, G2Params, MarketLoader, OISBootstrapper, run_pipeline
from bermudan_pricer.instruments import BermudanSwaptionSpec, SwapSpec

VAL_DATE = ql.Date(30, 8, 2023)

# Parameters used to generate synthetic markets
TRUE_PARAMS = G2Params(a=0.05, sigma=0.008, b=0.4, eta=0.012, rho=-0.6)


def european_data(curve, cfg, expiry=2, tenor=5, notional=10000.0, strike=None, payer=True):
    """Engine data of a European swaption on an annual-fixed swap (ATM by default)."""
    cal = cfg.calendar
    start = cal.advance(curve.reference_date, expiry, ql.Years, ql.ModifiedFollowing)
    end = cal.advance(start, tenor, ql.Years, ql.ModifiedFollowing)
    swap = SwapSpec(
        payer=payer,
        notional=notional,
        fixed_rate=0.0,
        start_date=start,
        maturity_date=end,
        fixed_frequency=ql.Annual,
        float_frequency=ql.Annual,
        calendar=cal,
    )
    swap.fixed_rate = swap.fair_rate(curve) if strike is None else strike
    return BermudanSwaptionSpec(swap, [start]).to_engine_data(curve)


@pytest.fixture
def cfg():
    return AppConfig(VAL_DATE)


@pytest.fixture(scope="session")
def curve():
    cfg = AppConfig(VAL_DATE)
    return OISBootstrapper(cfg).bootstrap(MarketLoader.reference_market().ois_nodes)


@pytest.fixture
def model(curve):
    return G2Model(curve, TRUE_PARAMS)


@pytest.fixture(scope="session")
def pipeline():
    """Full reference run: bootstrap, calibration, tree and PDE."""
    cfg = AppConfig(VAL_DATE)
    cfg.tree_steps = 100
    cfg.fdm_x_grid = 60
    cfg.fdm_y_grid = 60
    return run_pipeline(cfg, MarketLoader.reference_market())
