"""Bermudan swaption pricer package (G2++ model).

This package provides:
- Market inputs (SOFR OIS quotes + ATM swaption volatility matrix)
- OIS discount curve bootstrap
- G2 calibration to swaptions (closed-form engine + Levenberg-Marquardt)
- Manual pricing engines for the Bermudan (trinomial tree, ADI PDE)
- Orchestrator that cross-checks the two engines

The implementation is designed to be reproducible and easy to adapt for academic work.
"""

from .config import AppConfig
from .curve import DiscountCurve, OISBootstrapper
from .errors import (
    CalibrationError,
    CurveBootstrapError,
    ImpliedVolatilityError,
    PdeInstabilityError,
    PricingError,
)
from .instruments import BermudanSwaptionSpec, SwapSpec, reference_bermudan
from .market import MarketData, MarketLoader, MarketQuote
from .model import G2Model, G2Params
from .calibration import Calibrator, SwaptionHelper
from .pricer import MasterPricer, run_pipeline
