import dataclasses

import numpy as np
import pytest

from bermudan_pricer.model import G2Model, G2Params, decay_difference, decay_integral, variance_kernel

from conftest import TRUE_PARAMS, european_data


@pytest.mark.parametrize(
    "kwargs",
    [
        {"a": 0.0},
        {"sigma": -0.01},
        {"b": float("nan")},
        {"rho": 1.5},
    ],
)
def test_invalid_params_rejected(kwargs):
    with pytest.raises(ValueError):
        G2Params(**kwargs)


def test_unconstrained_round_trip():
    u = TRUE_PARAMS.to_unconstrained()
    back = G2Params.from_unconstrained(u)
    assert back.as_array() == pytest.approx(TRUE_PARAMS.as_array(), rel=1e-12)


def test_unconstrained_map_stays_admissible():
    p = G2Params.from_unconstrained([-100.0, 50.0, 0.0, 0.0, 40.0])
    assert p.a > 0.0 and np.isfinite(p.sigma)
    assert -1.0 < p.rho < 1.0


def test_unconstrained_map_floors_mean_reversion():
    p = G2Params.from_unconstrained([-100.0, np.log(0.01), -100.0, np.log(0.01), 0.0])
    assert p.a >= 1.0e-3 and p.b >= 1.0e-3
    tiny = G2Params(a=1.0e-6, sigma=0.01, b=1.0e-6, eta=0.01, rho=0.0)
    assert G2Params.from_unconstrained(tiny.to_unconstrained()).a == pytest.approx(1.0e-3, rel=1e-6)


def test_set_params_accepts_arrays_and_snapshot_is_independent(model):
    snap = model.snapshot()
    model.set_params([0.1, 0.01, 0.2, 0.02, 0.3])
    assert model.params.rho == pytest.approx(0.3)
    assert snap.params == TRUE_PARAMS


def test_zero_state_bond_matches_curve(model, curve):
    for T in (0.5, 2.0, 7.0):
        assert model.discount_bond(0.0, T, 0.0, 0.0) == pytest.approx(curve.discount(T), rel=1e-12)


def test_bond_variance_vanishes_at_zero_horizon(model):
    assert model.V(1.3, 1.3) == pytest.approx(0.0, abs=1e-14)
    assert model.V(0.0, 5.0) > 0.0


def test_phi_integral(model, curve):
    T = 3.0
    expected = -np.log(curve.discount(T)) + 0.5 * model.V(0.0, T)
    assert model.phi_integral(0.0, T) == pytest.approx(expected, rel=1e-12)
    split = model.phi_integral(0.0, 1.2) + model.phi_integral(1.2, T)
    assert split == pytest.approx(model.phi_integral(0.0, T), rel=1e-12)


def test_bond_is_vectorised_over_states(model):
    x = np.array([-0.01, 0.0, 0.01])
    bonds = model.discount_bond(1.0, 3.0, x, 0.0)
    assert bonds.shape == (3,)
    assert np.all(np.diff(bonds) < 0.0)


def test_step_moments_small_dt(model):
    dt = 1.0e-4
    p = model.params
    decay_x, decay_y, var_x, var_y, cov = model.step_moments(dt)
    assert decay_x == pytest.approx(1.0 - p.a * dt, rel=1e-6)
    assert var_x == pytest.approx(p.sigma ** 2 * dt, rel=1e-3)
    assert var_y == pytest.approx(p.eta ** 2 * dt, rel=1e-3)
    assert cov == pytest.approx(p.rho * p.sigma * p.eta * dt, rel=1e-3)
    sx, sy = model.factor_std(dt)
    assert sx == pytest.approx(np.sqrt(var_x))


def _swaption(model, data, payer):
    times, coeffs = data.bond_coefficients(0)
    return model.swaption(payer, data.exercise_times[0], times, coeffs)


def test_payer_receiver_parity(model, curve, cfg):
    data = european_data(curve, cfg, notional=1.0)
    payer = _swaption(model, data, True)
    receiver = _swaption(model, data, False)
    # ATM: the forward swap value is zero
    assert payer - receiver == pytest.approx(0.0, abs=1e-5)
    assert payer > 0.0


def test_swaption_increases_with_volatility(curve, cfg):
    data = european_data(curve, cfg, notional=1.0)
    low = G2Model(curve, TRUE_PARAMS)
    high = G2Model(curve, dataclasses.replace(TRUE_PARAMS, sigma=2.0 * TRUE_PARAMS.sigma))
    assert _swaption(high, data, True) > _swaption(low, data, True)


def test_negative_coefficients_rejected(model):
    with pytest.raises(ValueError):
        model.swaption(True, 1.0, [2.0, 3.0], [-0.01, 1.0])


@pytest.mark.parametrize(
    "params",
    [
        G2Params(a=1.0e-6, sigma=0.01, b=1.0e-6, eta=0.01, rho=0.0),
        G2Params(a=4.198e-6, sigma=0.0134, b=0.2, eta=1.0e-9, rho=0.0),
    ],
)
def test_bond_variance_at_vanishing_mean_reversion(curve, params):
    # integral of a driftless Brownian motion: sigma^2 tau^3 / 3 per factor
    tau = 3.0
    expected = params.sigma ** 2 * tau ** 3 / 3.0
    if params.b * tau < 1.0e-3:
        expected += params.eta ** 2 * tau ** 3 / 3.0
    assert G2Model(curve, params).V(0.0, tau) == pytest.approx(expected, rel=1e-4)


def test_kernels_continuous_across_series_switch():
    tau = np.array([0.0499, 0.0501]) / 0.2
    k = variance_kernel(0.1, 0.1, tau)
    closed = (tau - 2.0 * (1.0 - np.exp(-0.1 * tau)) / 0.1 + (1.0 - np.exp(-0.2 * tau)) / 0.2) / 0.01
    assert k == pytest.approx(closed, rel=1e-8)
    d = decay_difference(0.1, 0.2, tau)
    assert d == pytest.approx(((1.0 - np.exp(-0.1 * tau)) / 0.1 - (1.0 - np.exp(-0.2 * tau)) / 0.2) / 0.1,
                              rel=1e-8)


def test_kernels_match_closed_form_at_large_arguments():
    tau = np.array([1.0, 5.0, 30.0])
    a, b = 0.3, 0.8
    B = lambda k: (1.0 - np.exp(-k * tau)) / k  # noqa: E731
    assert decay_integral(a, tau) == pytest.approx(B(a), rel=1e-14)
    assert variance_kernel(a, b, tau) == pytest.approx((tau - B(a) - B(b) + B(a + b)) / (a * b), rel=1e-12)
    assert decay_difference(a, a + b, tau) == pytest.approx((B(a) - B(a + b)) / b, rel=1e-12)


def test_swaption_continuous_in_small_mean_reversion(curve, cfg):
    data = european_data(curve, cfg, notional=1.0)
    prices = [
        _swaption(G2Model(curve, G2Params(a=a, sigma=0.01, b=0.2, eta=0.008, rho=-0.3)), data, True)
        for a in (1.0e-7, 1.0e-5, 1.0e-3)
    ]
    assert np.all(np.isfinite(prices))
    assert prices[0] == pytest.approx(prices[1], rel=1e-4)
    assert prices[1] == pytest.approx(prices[2], rel=2e-2)
