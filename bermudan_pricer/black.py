"""Market quoting formulas for European swaptions."""

import numpy as np
from scipy.stats import norm


def black_formula(forward, strike, std_dev, payer=True, shift=0.0):
    """Undiscounted shifted-lognormal (Black-76) option value.

    ``std_dev`` is the total volatility ``sigma * sqrt(T)``.
    """
    f = float(forward) + shift
    k = float(strike) + shift
    w = 1.0 if payer else -1.0
    if f <= 0.0 or k <= 0.0:
        raise ValueError(f"Shifted forward ({f}) and strike ({k}) must be positive")
    if std_dev <= 0.0:
        return max(w * (f - k), 0.0)
    d1 = np.log(f / k) / std_dev + 0.5 * std_dev
    d2 = d1 - std_dev
    return float(w * (f * norm.cdf(w * d1) - k * norm.cdf(w * d2)))


def bachelier_formula(forward, strike, std_dev, payer=True):
    """Undiscounted normal (Bachelier) option value."""
    w = 1.0 if payer else -1.0
    intrinsic = w * (float(forward) - float(strike))
    if std_dev <= 0.0:
        return max(intrinsic, 0.0)
    d = intrinsic / std_dev
    return float(intrinsic * norm.cdf(d) + std_dev * norm.pdf(d))


def swaption_market_value(annuity, forward, strike, vol, expiry, payer=True,
                          vol_type="SHIFTED_LOGNORMAL", shift=0.0):
    """Swaption premium from a quoted volatility.

    Parameters
    ----------
    annuity : float
        Discounted sum of fixed accruals (the swap PV01 per unit rate).
    vol_type : str
        ``"SHIFTED_LOGNORMAL"`` or ``"NORMAL"``.
    """
    std_dev = float(vol) * np.sqrt(max(float(expiry), 0.0))
    if vol_type == "SHIFTED_LOGNORMAL":
        undiscounted = black_formula(forward, strike, std_dev, payer, shift)
    elif vol_type == "NORMAL":
        undiscounted = bachelier_formula(forward, strike, std_dev, payer)
    else:
        raise ValueError(f"Unknown volatility type '{vol_type}'")
    return float(annuity) * undiscounted
