"""Convergence and sensitivity sweeps for the Bermudan NPV.

The functions return ``pandas.DataFrame`` objects in a *wide* format: the
first column is the x-axis, and each additional column is a method label.

1) NPV vs tree time steps (with the PDE NPV at the configured grid as a
   reference column)
2) NPV vs PDE grid resolution
3) NPV vs volatility (sigma and eta scaled together)
"""

import dataclasses

import pandas as pd

from .pricer import MasterPricer


def price_vs_tree_steps(pricer, steps_grid):
    fdm = pricer.calculate("G2_FDM")
    rows = []
    for n in steps_grid:
        rows.append(
            {
                "tree_steps": int(n),
                "G2_TREE": pricer.calculate("G2_TREE", time_steps=int(n)),
                "G2_FDM": fdm,
            }
        )
    return pd.DataFrame(rows)


def price_vs_fdm_grid(pricer, grids):
    """NPV for each ``(t_grid, x_grid, y_grid)`` triple.

    The tree NPV at the configured step count is repeated as a reference.
    """
    tree = pricer.calculate("G2_TREE")
    rows = []
    for t_grid, x_grid, y_grid in grids:
        rows.append(
            {
                "grid": f"{t_grid}x{x_grid}x{y_grid}",
                "G2_FDM": pricer.calculate(
                    "G2_FDM", t_grid=int(t_grid), x_grid=int(x_grid), y_grid=int(y_grid)
                ),
                "G2_TREE": tree,
            }
        )
    return pd.DataFrame(rows)


def _scale_vols(model, multiplier):
    """Copy of ``model`` with sigma and eta scaled."""
    p = model.params
    scaled = model.snapshot()
    scaled.set_params(
        dataclasses.replace(p, sigma=p.sigma * float(multiplier), eta=p.eta * float(multiplier))
    )
    return scaled


def price_vs_volatility(pricer, vol_multipliers, methods=("G2_TREE", "G2_FDM")):
    """NPV sensitivity to a joint scaling of the factor volatilities."""
    rows = []
    for m in vol_multipliers:
        bumped = MasterPricer(_scale_vols(pricer.model, m), pricer.bermudan_spec, pricer.cfg)
        row = {"vol_multiplier": float(m)}
        for method in methods:
            row[method] = bumped.calculate(method)
        rows.append(row)
    return pd.DataFrame(rows)
