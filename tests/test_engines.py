import numpy as np
import pytest
import QuantLib as ql

from bermudan_pricer.engines import G2AnalyticSwaptionEngine, G2FdmEngine, G2TreeEngine
from bermudan_pricer.engines.fdm import MeshDerivatives, concentrated_mesh
from bermudan_pricer.engines.tree import trinomial_branch
from bermudan_pricer.errors import PdeInstabilityError
from bermudan_pricer.instruments import BermudanSwaptionSpec, SwapSpec
from bermudan_pricer.model import G2Model, G2Params
from bermudan_pricer.timegrid import TimeGrid

from conftest import european_data


@pytest.fixture
def european(curve, cfg):
    return european_data(curve, cfg)


@pytest.fixture
def analytic_npv(model, european):
    return G2AnalyticSwaptionEngine(model).price(european)


def test_trinomial_branch_probabilities():
    mean = np.linspace(-0.05, 0.05, 41)
    std = 0.01
    k, p = trinomial_branch(mean, std)
    dx = np.sqrt(3.0) * std
    assert np.all(p >= 0.0) and np.all(p <= 1.0)
    assert p.sum(axis=-1) == pytest.approx(np.ones_like(mean))
    offsets = (k[:, None] + np.array([-1, 0, 1])) * dx
    assert np.sum(p * offsets, axis=-1) == pytest.approx(mean, abs=1e-15)
    var = np.sum(p * offsets ** 2, axis=-1) - mean ** 2
    assert var == pytest.approx(np.full_like(mean, std ** 2), rel=1e-9)


def test_tree_matches_conditional_moments(model):
    engine = G2TreeEngine(model)
    lattice = engine.build(TimeGrid([1.0], 10))
    i = 4
    level, nxt = lattice.levels[i], lattice.levels[i + 1]
    x_next = np.broadcast_to(nxt.x[:, None], nxt.shape)
    y_next = nxt.y
    decay_x, decay_y, var_x, var_y, cov = model.step_moments(lattice.steps[i].dt)

    mean_x = lattice.expectation(i, x_next)
    mean_y = lattice.expectation(i, y_next)
    assert mean_x == pytest.approx(np.broadcast_to(decay_x * level.x[:, None], level.shape), abs=1e-15)
    assert mean_y == pytest.approx(decay_y * level.y, abs=1e-15)

    ex2 = lattice.expectation(i, x_next ** 2) - mean_x ** 2
    ey2 = lattice.expectation(i, y_next ** 2) - mean_y ** 2
    exy = lattice.expectation(i, x_next * y_next) - mean_x * mean_y
    assert ex2 == pytest.approx(np.full(level.shape, var_x), rel=1e-6)
    assert ey2 == pytest.approx(np.full(level.shape, var_y), rel=1e-6)
    assert exy == pytest.approx(np.full(level.shape, cov), rel=1e-6)


def test_tree_reprices_the_curve(model, curve):
    engine = G2TreeEngine(model)
    lattice = engine.build(TimeGrid([2.0], 20))
    for level, q in zip(lattice.levels, engine.state_prices(lattice)):
        assert q.sum() == pytest.approx(curve.discount(level.time), rel=1e-10)


def test_tree_european_matches_analytic(model, european, analytic_npv):
    tree = G2TreeEngine(model, time_steps=120).price(european)
    assert tree == pytest.approx(analytic_npv, rel=0.03)


@pytest.mark.parametrize("scheme,tolerance", [("hundsdorfer", 0.03), ("douglas", 0.05)])
def test_fdm_european_matches_analytic(model, european, analytic_npv, scheme, tolerance):
    fdm = G2FdmEngine(model, t_grid=100, x_grid=61, y_grid=61, scheme=scheme).price(european)
    assert fdm == pytest.approx(analytic_npv, rel=tolerance)


def test_receiver_european(model, curve, cfg):
    data = european_data(curve, cfg, payer=False)
    analytic = G2AnalyticSwaptionEngine(model).price(data)
    tree = G2TreeEngine(model, time_steps=120).price(data)
    assert analytic > 0.0
    assert tree == pytest.approx(analytic, rel=0.03)


def test_bermudan_worth_more_than_european(model, curve, cfg):
    cal = cfg.calendar
    start = cal.advance(curve.reference_date, 2, ql.Years, ql.ModifiedFollowing)
    end = cal.advance(start, 5, ql.Years, ql.ModifiedFollowing)
    swap = SwapSpec(True, 10000.0, 0.0, start, end, ql.Annual, ql.Annual, calendar=cal)
    swap.fixed_rate = swap.fair_rate(curve)

    engine = G2TreeEngine(model, time_steps=60)
    european = engine.price(BermudanSwaptionSpec(swap, [start]).to_engine_data(curve))
    bermudan = engine.price(BermudanSwaptionSpec.from_swap(swap).to_engine_data(curve))
    assert bermudan > european


def test_pde_instability_detected(model, european):
    engine = G2FdmEngine(model, t_grid=2, x_grid=101, y_grid=101, scheme="douglas", theta=0.0)
    with pytest.raises(PdeInstabilityError) as info:
        engine.price(european)
    assert info.value.ratio > info.value.bound
    assert info.value.condition == "diffusion number"


def test_fdm_argument_validation(model):
    with pytest.raises(ValueError):
        G2FdmEngine(model, x_grid=2)
    with pytest.raises(ValueError):
        G2FdmEngine(model, scheme="craig-sneyd")
    with pytest.raises(ValueError):
        G2TreeEngine(model, time_steps=0)


def test_pde_convection_dominated_grid_detected(curve, european):
    fast = G2Model(curve, G2Params(a=2.0, sigma=0.01, b=2.0, eta=0.01, rho=0.0))
    engine = G2FdmEngine(fast, t_grid=50, x_grid=11, y_grid=11)
    with pytest.raises(PdeInstabilityError) as info:
        engine.price(european)
    assert info.value.condition == "cell Peclet number"
    assert info.value.ratio > 1.0
    # refining the mesh resolves the drift
    assert G2FdmEngine(fast, t_grid=50, x_grid=45, y_grid=45).price(european) >= 0.0


def test_concentrated_mesh():
    z = concentrated_mesh(2.0, 21, 1.5)
    assert z[0] == pytest.approx(-2.0) and z[-1] == pytest.approx(2.0)
    assert z[10] == pytest.approx(0.0, abs=1e-15)
    assert z == pytest.approx(-z[::-1])
    h = np.diff(z)
    assert np.all(np.diff(h[10:]) > 0.0)
    assert concentrated_mesh(2.0, 5, 0.0) == pytest.approx([-2.0, -1.0, 0.0, 1.0, 2.0])


def test_mesh_derivatives_exact_on_quadratics():
    z = concentrated_mesh(1.0, 15, 2.0)
    mesh = MeshDerivatives(z)
    u = 3.0 * z ** 2 - z + 0.5
    first = np.sum(mesh.first[1:-1] * np.stack([u[:-2], u[1:-1], u[2:]], axis=-1), axis=-1)
    second = np.sum(mesh.second[1:-1] * np.stack([u[:-2], u[1:-1], u[2:]], axis=-1), axis=-1)
    assert first == pytest.approx(6.0 * z[1:-1] - 1.0, abs=1e-10)
    assert second == pytest.approx(np.full(13, 6.0), rel=1e-9)


@pytest.mark.parametrize("concentration,damping_steps", [(0.0, 0), (1.5, 0), (1.5, 2)])
def test_fdm_mesh_and_damping_variants(model, european, analytic_npv, concentration, damping_steps):
    fdm = G2FdmEngine(model, t_grid=100, x_grid=61, y_grid=61, concentration=concentration,
                      damping_steps=damping_steps).price(european)
    assert fdm == pytest.approx(analytic_npv, rel=0.03)


def test_fdm_bermudan_close_to_tree(model, curve, cfg):
    cal = cfg.calendar
    start = cal.advance(curve.reference_date, 1, ql.Years, ql.ModifiedFollowing)
    end = cal.advance(start, 5, ql.Years, ql.ModifiedFollowing)
    swap = SwapSpec(True, 10000.0, 0.0, start, end, ql.Annual, ql.Annual, calendar=cal)
    swap.fixed_rate = swap.fair_rate(curve)
    data = BermudanSwaptionSpec.from_swap(swap).to_engine_data(curve)

    tree = G2TreeEngine(model, time_steps=100).price(data)
    fdm = G2FdmEngine(model, t_grid=100, x_grid=61, y_grid=61).price(data)
    assert fdm > 0.0
    assert fdm == pytest.approx(tree, rel=0.05)


def test_fdm_argument_validation_mesh(model):
    with pytest.raises(ValueError):
        G2FdmEngine(model, concentration=-1.0)
    with pytest.raises(ValueError):
        G2FdmEngine(model, damping_steps=-1)
