import numpy as np
import pytest

from bermudan_pricer.calibration import CalibrationErrorType, Calibrator, SwaptionHelper
from bermudan_pricer.engines import G2AnalyticSwaptionEngine
from bermudan_pricer.errors import CalibrationError, ImpliedVolatilityError
from bermudan_pricer.market import MarketLoader, MarketQuote
from bermudan_pricer.model import G2Model, G2Params
from bermudan_pricer.optimization import EndCriteria, EndCriteriaType

from conftest import TRUE_PARAMS


@pytest.fixture
def calibrator(curve, cfg):
    return Calibrator(curve, cfg)


@pytest.fixture
def reference_helpers(calibrator):
    return calibrator.swaption_helpers(MarketLoader.reference_market().swaption_vols)


def _set_quotes_to_model(helpers, model):
    """Overwrite each helper quote with the vol implied by ``model``."""
    engine = G2AnalyticSwaptionEngine(model)
    for h in helpers:
        h.set_pricing_engine(engine)
        h.volatility.set_value(h.implied_volatility(h.model_value(), 1e-14, 1000, 1e-4, 3.0))
        h.set_pricing_engine(None)


def test_anti_diagonal_selection(reference_helpers):
    assert [h.label for h in reference_helpers] == ["1x7", "2x5", "3x4", "4x3", "5x2", "7x1"]
    assert reference_helpers[0].volatility.value == pytest.approx(0.3428)


def test_full_grid_and_non_square_grid(calibrator):
    vols = MarketLoader.reference_market().swaption_vols
    assert len(calibrator.swaption_helpers(vols, diagonal=False)) == 36
    five_rows = [v for v in vols if str(v[0]) != "7Y"]
    with pytest.raises(ValueError):
        calibrator.swaption_helpers(five_rows, diagonal=True)


def test_helper_is_at_the_money(reference_helpers, curve):
    for h in reference_helpers:
        assert h.swap.npv(curve) == pytest.approx(0.0, abs=1e-12)
        assert h.annuity > 0.0
        assert h.data.is_european


def test_implied_vol_recovers_quote(reference_helpers):
    for h in reference_helpers:
        vol = h.implied_volatility(h.market_value(), accuracy=1e-12)
        assert vol == pytest.approx(h.volatility.value, abs=1e-8)


def test_quote_is_read_by_reference(reference_helpers):
    h = reference_helpers[0]
    before = h.market_value()
    h.volatility.set_value(2.0 * h.volatility.value)
    assert h.market_value() > before


def test_zero_volatility_quote(curve, cfg):
    h = SwaptionHelper("2Y", "3Y", MarketQuote(0.0), curve, cfg.calendar)
    assert h.market_value() == 0.0
    with pytest.raises(ImpliedVolatilityError):
        h.implied_volatility(0.0)
    h.set_pricing_engine(G2AnalyticSwaptionEngine(G2Model(curve, TRUE_PARAMS)))
    assert np.isfinite(h.calibration_error())


def test_model_value_needs_an_engine(reference_helpers):
    with pytest.raises(ValueError):
        reference_helpers[0].model_value()


@pytest.mark.parametrize(
    "error_type",
    [CalibrationErrorType.PRICE, CalibrationErrorType.RELATIVE_PRICE, CalibrationErrorType.IMPLIED_VOL],
)
def test_calibration_error_vanishes_on_model_quotes(curve, cfg, error_type):
    model = G2Model(curve, TRUE_PARAMS)
    h = SwaptionHelper("3Y", "4Y", MarketQuote(0.3), curve, cfg.calendar, error_type=error_type)
    _set_quotes_to_model([h], model)
    h.set_pricing_engine(G2AnalyticSwaptionEngine(model))
    assert h.calibration_error() == pytest.approx(0.0, abs=1e-9)


def test_synthetic_fit(calibrator, reference_helpers, curve):
    _set_quotes_to_model(reference_helpers, G2Model(curve, TRUE_PARAMS))
    start = G2Params(a=0.055, sigma=0.0072, b=0.44, eta=0.0132, rho=-0.54)
    model = G2Model(curve, start)
    ec = EndCriteria(max_iterations=1000, root_tolerance=1e-12, param_tolerance=1e-12,
                     gradient_tolerance=1e-12)
    result = calibrator.calibrate_g2(model, reference_helpers, end_criteria=ec)

    assert model.params == result.params
    assert result.cost < 1e-10
    assert np.max(np.abs(result.report["diff"])) < 5e-4
    # the two factors are interchangeable: (a, sigma) may come back as (b, eta)
    p = result.params
    fitted = sorted([(p.a, p.sigma), (p.b, p.eta)])
    expected = sorted([(TRUE_PARAMS.a, TRUE_PARAMS.sigma), (TRUE_PARAMS.b, TRUE_PARAMS.eta)])
    assert np.array(fitted) == pytest.approx(np.array(expected), rel=0.05)
    assert p.rho == pytest.approx(TRUE_PARAMS.rho, abs=0.05)


def test_calibration_from_true_params_does_not_move(calibrator, reference_helpers, curve):
    _set_quotes_to_model(reference_helpers, G2Model(curve, TRUE_PARAMS))
    model = G2Model(curve, TRUE_PARAMS)
    ec = EndCriteria(param_tolerance=1e-6)
    result = calibrator.calibrate_g2(model, reference_helpers, end_criteria=ec)
    assert result.converged
    assert result.params.as_array() == pytest.approx(TRUE_PARAMS.as_array(), abs=1e-6)


def test_iteration_budget_attaches_soft_error(calibrator, reference_helpers, curve, cfg):
    model = G2Model(curve, G2Params.from_array(cfg.initial_params))
    result = calibrator.calibrate_g2(model, reference_helpers, end_criteria=EndCriteria(max_iterations=1))
    assert result.end_criteria is EndCriteriaType.MAX_ITERATIONS
    assert not result.converged
    assert isinstance(result.error, CalibrationError)
    with pytest.raises(CalibrationError):
        result.raise_for_status()
    # best parameters are still installed
    assert model.params == result.params


def test_report_records_failed_implied_vol(calibrator, reference_helpers, curve):
    frozen = G2Model(curve, G2Params(a=0.1, sigma=1e-6, b=0.2, eta=1e-6, rho=0.0))
    for h in reference_helpers:
        h.set_pricing_engine(G2AnalyticSwaptionEngine(frozen))
    report = calibrator.report(reference_helpers)
    assert list(report.columns) == [
        "instrument", "model_value", "market_value", "model_vol", "market_vol", "diff", "error",
    ]
    assert report["model_vol"].isna().all()
    assert report["error"].str.contains("Implied volatility failed").all()


def test_pipeline_calibration(pipeline):
    report = pipeline.calibration.report
    assert len(report) == 6
    assert np.nanmax(np.abs(report["diff"])) < 0.05
    assert pipeline.model.params == pipeline.params
    assert pipeline.calibration.converged
    # mean reversion stays away from the degenerate driftless limit
    assert min(pipeline.params.a, pipeline.params.b) > 5e-3
