import numpy as np
import pytest

from bermudan_pricer import MasterPricer, reference_bermudan
from bermudan_pricer.sensitivity import price_vs_fdm_grid, price_vs_tree_steps, price_vs_volatility


@pytest.fixture
def pricer(model, cfg):
    cfg.tree_steps = 20
    cfg.fdm_t_grid = 30
    cfg.fdm_x_grid = 51
    cfg.fdm_y_grid = 51
    return MasterPricer(model, reference_bermudan(cfg), cfg)


def test_price_vs_tree_steps(pricer):
    df = price_vs_tree_steps(pricer, [10, 20])
    assert list(df.columns) == ["tree_steps", "G2_TREE", "G2_FDM"]
    assert df["tree_steps"].tolist() == [10, 20]
    assert df["G2_FDM"].nunique() == 1
    assert (df["G2_TREE"] > 0.0).all()


def test_price_vs_fdm_grid(pricer):
    df = price_vs_fdm_grid(pricer, [(20, 45, 45), (30, 51, 51)])
    assert list(df.columns) == ["grid", "G2_FDM", "G2_TREE"]
    assert df["grid"].tolist() == ["20x45x45", "30x51x51"]
    assert df["G2_FDM"].iloc[1] == pytest.approx(pricer.calculate("G2_FDM"))


def test_price_increases_with_volatility(pricer):
    df = price_vs_volatility(pricer, [0.5, 1.0, 1.5], methods=("G2_TREE",))
    assert list(df.columns) == ["vol_multiplier", "G2_TREE"]
    assert np.all(np.diff(df["G2_TREE"].values) > 0.0)
    assert df["G2_TREE"].iloc[1] == pytest.approx(pricer.calculate("G2_TREE"))
    # the original pricer is untouched
    assert pricer.model.params.sigma == pytest.approx(0.008)
