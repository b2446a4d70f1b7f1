import logging
import sys
from pathlib import Path

import pandas as pd

from bermudan_pricer.calibration import Calibrator
from bermudan_pricer.config import AppConfig
from bermudan_pricer.curve import OISBootstrapper
from bermudan_pricer.errors import PricingError
from bermudan_pricer.instruments import reference_bermudan
from bermudan_pricer.market import MarketLoader
from bermudan_pricer.model import G2Model, G2Params
from bermudan_pricer.pricer import MasterPricer
from bermudan_pricer.reporting import (
    curve_table,
    format_calibration_report,
    format_params,
    maybe_plot_curve,
    maybe_plot_sensitivity,
    maybe_plot_surface,
    save_calibration_params,
    save_config_snapshot,
    save_dataframe,
    save_results_table,
)
from bermudan_pricer.sensitivity import price_vs_fdm_grid, price_vs_tree_steps, price_vs_volatility

logger = logging.getLogger("bermudan_pricer.run_analysis")


def run(cfg, market, out_dir, sensitivities=True):
    # -------------------------------------------------------------------------
    # 1. Curve
    # -------------------------------------------------------------------------
    print("--- 1. SOFR OIS curve ---")
    curve = OISBootstrapper(cfg).bootstrap(market.ois_nodes)
    table = curve_table(curve)
    print(table.to_string(index=False, float_format=lambda v: f"{v:.6f}"))

    # -------------------------------------------------------------------------
    # 2. Calibrate G2 to the anti-diagonal of the swaption grid
    # -------------------------------------------------------------------------
    print("\n--- 2. G2 (analytic formulae) calibration ---")
    calibrator = Calibrator(curve, cfg)
    helpers = calibrator.swaption_helpers(market.swaption_vols, diagonal=True)
    model = G2Model(curve, G2Params.from_array(cfg.initial_params))
    calibration = calibrator.calibrate_g2(model, helpers)

    for line in format_calibration_report(calibration.report):
        print(line)
    print("calibrated to:")
    print(format_params(calibration.params))
    print(f"end criteria: {calibration.end_criteria.name} ({calibration.iterations} iterations)")

    # -------------------------------------------------------------------------
    # 3. Bermudan swaption: tree vs PDE
    # -------------------------------------------------------------------------
    print("\n--- 3. Bermudan swaption ---")
    bermudan = reference_bermudan(cfg)
    pricer = MasterPricer(model, bermudan, cfg)
    check = pricer.cross_check()
    european = pricer.calculate("G2_ANALYTIC_EUROPEAN")

    print(f"G2 (tree):      {check['tree']:.6f}")
    print(f"G2 (fdm) :      {check['fdm']:.6f}")
    print(f"relative diff:  {check['relative_difference']:.4%}")
    print(f"European (first exercise): {european:.6f}")

    results_df = pd.DataFrame(
        [
            {"method": "G2_TREE", "npv": check["tree"]},
            {"method": "G2_FDM", "npv": check["fdm"]},
            {"method": "G2_ANALYTIC_EUROPEAN", "npv": european},
        ]
    )

    # -------------------------------------------------------------------------
    # 4. Outputs (CSV + figures)
    # -------------------------------------------------------------------------
    save_results_table(results_df, out_dir)
    save_calibration_params(calibration.params.to_dict(), out_dir)
    save_config_snapshot(cfg, out_dir)
    save_dataframe(calibration.report, out_dir, "calibration_report.csv")
    save_dataframe(table, out_dir, "curve.csv")
    maybe_plot_curve(curve, out_dir)
    maybe_plot_surface(market.vol_matrix(), out_dir, title="swaption_lognormal_vol_surface")

    if not sensitivities:
        return check

    # -------------------------------------------------------------------------
    # 5. Convergence and sensitivity
    # -------------------------------------------------------------------------
    print("\n--- 5. Convergence ---")
    df_steps = price_vs_tree_steps(pricer, [25, 50, 100, 150])
    print(df_steps.to_string(index=False))
    save_dataframe(df_steps, out_dir, "convergence_tree_steps.csv")
    maybe_plot_sensitivity(
        df_steps,
        out_dir,
        x_col="tree_steps",
        title="Bermudan NPV vs tree steps",
        xlabel="Time steps",
        ylabel="NPV",
        filename_png="npv_vs_tree_steps.png",
    )

    df_grid = price_vs_fdm_grid(pricer, [(50, 45, 45), (100, 71, 71), (200, 101, 101)])
    print(df_grid.to_string(index=False))
    save_dataframe(df_grid, out_dir, "convergence_fdm_grid.csv")
    maybe_plot_sensitivity(
        df_grid,
        out_dir,
        x_col="grid",
        title="Bermudan NPV vs PDE grid",
        xlabel="t x X x Y",
        ylabel="NPV",
        filename_png="npv_vs_fdm_grid.png",
    )

    df_vol = price_vs_volatility(pricer, [0.5, 0.75, 1.0, 1.25, 1.5])
    save_dataframe(df_vol, out_dir, "sensitivity_npv_vs_volatility.csv")
    maybe_plot_sensitivity(
        df_vol,
        out_dir,
        x_col="vol_multiplier",
        title="Bermudan NPV vs volatility (sigma, eta multiplier)",
        xlabel="Volatility multiplier",
        ylabel="NPV",
        filename_png="npv_vs_volatility.png",
    )
    return check


def main():
    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    project_root = Path(__file__).resolve().parent
    data_dir = project_root / "data"
    out_dir = project_root / "outputs"

    ois_csv = data_dir / "ois_quotes.csv"
    vols_csv = data_dir / "swaption_vols.csv"

    # Quotes of 30-Aug-2023; the CSVs under data/ hold the same snapshot
    val_date = MarketLoader.reference_market().evaluation_date
    cfg = AppConfig(val_date)
    cfg.apply_global_settings()

    try:
        if ois_csv.exists() and vols_csv.exists():
            market = MarketLoader(cfg).load(str(ois_csv), str(vols_csv))
        else:
            market = MarketLoader.reference_market()

        run(cfg, market, out_dir)
    except PricingError as exc:
        logger.error("%s", exc)
        return 1

    print(f"\nOutputs written to: {out_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
