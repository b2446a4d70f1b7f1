import json
from pathlib import Path

import numpy as np
import pandas as pd


def ensure_dir(path):
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def format_calibration_report(report):
    """One line per helper: ``1x7: model 34.28%, market 34.28% (+0.00%)``."""
    lines = []
    for row in report.itertuples(index=False):
        if np.isnan(row.model_vol):
            lines.append(f"{row.instrument}: model n/a, market {row.market_vol:.2%} ({row.error})")
            continue
        lines.append(
            f"{row.instrument}: model {row.model_vol:.2%}, "
            f"market {row.market_vol:.2%} ({row.diff:+.2%})"
        )
    return lines


def format_params(params):
    return (
        f"a     = {params.a:.6f}, sigma = {params.sigma:.6f}\n"
        f"b     = {params.b:.6f}, eta   = {params.eta:.6f}\n"
        f"rho   = {params.rho:.6f}"
    )


def curve_table(curve):
    """Pillars of a discount curve with zero rates (continuous, Act/360 time)."""
    rows = []
    for t, df in curve.nodes():
        rows.append({"time": t, "discount": df, "zero_rate": curve.zero_rate(t)})
    return pd.DataFrame(rows)


def save_results_table(results_df, output_dir):
    """Save the main results table (method, NPV) as CSV."""
    out = ensure_dir(output_dir)
    csv_path = out / "results_summary.csv"
    results_df.to_csv(csv_path, index=False)
    return csv_path


def save_calibration_params(calib_params, output_dir):
    """Save calibrated parameters as JSON for auditability."""
    out = ensure_dir(output_dir)
    path = out / "calibration_params.json"
    with open(path, "w", encoding="utf-8") as f:
        json.dump(calib_params, f, indent=2, sort_keys=True, default=float)
    return path


def save_config_snapshot(cfg, output_dir):
    """Persist the scalar config fields as JSON (reproducibility)."""
    out = ensure_dir(output_dir)
    path = out / "config_snapshot.json"
    d = {}
    for k, v in cfg.__dict__.items():
        # Skip non-serializable objects.
        if k == "val_date":
            d[k] = str(v)
        elif isinstance(v, (int, float, str, bool)):
            d[k] = v
    with open(path, "w", encoding="utf-8") as f:
        json.dump(d, f, indent=2, sort_keys=True)
    return path


def save_dataframe(df, output_dir, filename):
    """Save a DataFrame to CSV inside ``output_dir``."""
    out = ensure_dir(output_dir)
    p = out / filename
    df.to_csv(p, index=False)
    return p


def _pyplot():
    try:
        import matplotlib
    except ImportError:
        return None
    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    return plt


def maybe_plot_curve(curve, output_dir):
    """Plot discount factors and zero rates of the bootstrapped curve.

    If matplotlib is not available, this function does nothing.
    """
    plt = _pyplot()
    if plt is None:
        return None

    table = curve_table(curve)
    t = np.linspace(0.0, curve.max_time, 200)[1:]

    fig = plt.figure()
    ax = fig.add_subplot(111)
    ax.plot(t, [curve.zero_rate(s) for s in t], label="zero rate")
    ax.plot(table["time"], table["zero_rate"], "o", label="pillars")
    ax.set_xlabel("Time (Act/360)")
    ax.set_ylabel("Zero rate")
    ax.grid(True, alpha=0.3)
    ax.legend(fontsize=8)
    fig.tight_layout()

    out = ensure_dir(Path(output_dir) / "figures")
    p = out / "curve.png"
    fig.savefig(p, dpi=200)
    plt.close(fig)
    return p


def maybe_plot_surface(matrix, output_dir, title="surface"):
    """Plot a volatility matrix (rows: option tenor, cols: swap tenor) as a heatmap."""
    plt = _pyplot()
    if plt is None or matrix.empty:
        return None

    values = matrix.values.astype(float)

    fig = plt.figure()
    ax = fig.add_subplot(111)
    im = ax.imshow(values, aspect="auto")
    ax.set_title(title)
    ax.set_yticks(range(len(matrix.index)))
    ax.set_yticklabels(matrix.index)
    ax.set_xticks(range(len(matrix.columns)))
    ax.set_xticklabels(matrix.columns, rotation=45, ha="right")
    fig.colorbar(im, ax=ax)
    fig.tight_layout()

    out = ensure_dir(Path(output_dir) / "figures")
    p = out / f"{title.replace(' ', '_').lower()}.png"
    fig.savefig(p, dpi=200)
    plt.close(fig)
    return p


def maybe_plot_sensitivity(df, output_dir, x_col, title, xlabel, ylabel, filename_png):
    """Plot multiple lines from a wide sensitivity DataFrame.

    Parameters
    ----------
    df : pandas.DataFrame
        Must contain the x column (``x_col``) and one or more y columns.
    output_dir : str|Path
        Base output directory. The figure is saved under ``output_dir/figures``.
    x_col : str
        Name of the x-axis column.
    title, xlabel, ylabel : str
        Plot labels.
    filename_png : str
        Output filename (e.g. 'npv_vs_tree_steps.png').
    """
    plt = _pyplot()
    if plt is None:
        return None

    fig = plt.figure()
    ax = fig.add_subplot(111)

    x = df[x_col].values
    for col in df.columns:
        if col == x_col:
            continue
        ax.plot(x, df[col].values, marker="o", linewidth=1.5, label=str(col))

    ax.set_title(title)
    ax.set_xlabel(xlabel)
    ax.set_ylabel(ylabel)
    ax.grid(True, alpha=0.3)
    ax.legend(fontsize=8)
    fig.tight_layout()

    fig_dir = ensure_dir(Path(output_dir) / "figures")
    p = fig_dir / filename_png
    fig.savefig(p, dpi=200)
    plt.close(fig)
    return p
