import logging
import warnings

import QuantLib as ql

from .optimization import EndCriteria
from .utils import us_sofr_calendar


class AppConfig:
    """Central configuration object.

    The pipeline prices the same Bermudan swaption with a tree and with a PDE
    as a cross-check of the calibrated G2 model, so every numerical knob of
    both engines, of the curve bootstrap and of the calibration lives here.

    Parameters
    ----------
    val_date : QuantLib.Date
        Evaluation date (curve reference date).
    calendar : QuantLib.Calendar, optional
        Calendar used for settlement, schedules and option expiries.
        Defaults to the United States SOFR calendar.
    log_level : str
        Level applied by ``apply_global_settings``.

    Notes
    -----
    Defaults reproduce the reference run: Act/360 curve, end criteria
    (400, 100, 1e-8, 1e-8, 1e-8), analytic engine on +/-6 std with 16
    intervals, 50 tree steps and a 100x51x51 finite-difference grid.
    """

    def __init__(self, val_date, calendar=None, log_level="INFO"):
        self.val_date = val_date
        self.calendar = calendar or us_sofr_calendar()
        self.log_level = log_level

        # ----------------
        # Curve
        # ----------------
        self.settlement_days = 2
        self.curve_day_count = ql.Actual360()
        self.ois_fixed_day_count = ql.Actual360()
        self.allow_extrapolation = True
        self.bootstrap_max_iterations = 100
        self.bootstrap_accuracy = 1.0e-12

        # ----------------
        # Calibration (Levenberg-Marquardt)
        # ----------------
        self.max_iterations = 400
        self.max_stalled_steps = 100
        self.root_tolerance = 1.0e-8
        self.param_tolerance = 1.0e-8
        self.gradient_tolerance = 1.0e-8
        self.calibration_error_type = "RELATIVE_PRICE"
        self.jacobian = "central"
        # a, sigma, b, eta, rho
        self.initial_params = (0.1, 0.01, 0.1, 0.01, -0.75)

        # Swaption helpers
        self.swaption_fixed_frequency = ql.Annual
        self.swaption_fixed_day_count = ql.Actual360()
        self.volatility_type = "SHIFTED_LOGNORMAL"
        self.volatility_shift = 0.0

        # ----------------
        # Analytic swaption engine
        # ----------------
        self.analytic_range = 6.0
        self.analytic_intervals = 16

        # ----------------
        # Implied volatility (reporting)
        # ----------------
        self.iv_accuracy = 1.0e-4
        self.iv_max_evaluations = 1000
        self.iv_min_vol = 0.05
        self.iv_max_vol = 0.50

        # ----------------
        # Tree
        # ----------------
        self.tree_steps = 50

        # ----------------
        # PDE (ADI)
        # ----------------
        self.fdm_t_grid = 100
        self.fdm_x_grid = 51
        self.fdm_y_grid = 51
        self.fdm_n_std = 5.0
        self.fdm_scheme = "hundsdorfer"
        self.fdm_theta = None  # scheme default
        self.fdm_concentration = 1.5
        self.fdm_damping_steps = 2

        # ----------------
        # Tree vs PDE
        # ----------------
        self.cross_check_tolerance = 0.05

        # ----------------
        # Global flags
        # ----------------
        self.suppress_warnings = True

    def end_criteria(self):
        return EndCriteria(
            max_iterations=int(self.max_iterations),
            max_stalled_steps=int(self.max_stalled_steps),
            root_tolerance=float(self.root_tolerance),
            param_tolerance=float(self.param_tolerance),
            gradient_tolerance=float(self.gradient_tolerance),
        )

    def apply_global_settings(self):
        """Apply process-wide settings (warnings, logging, QuantLib date)."""
        if self.suppress_warnings:
            warnings.filterwarnings("ignore")
        logging.getLogger("bermudan_pricer").setLevel(self.log_level)
        ql.Settings.instance().evaluationDate = self.val_date
