from .base import PricingEngine


class G2AnalyticSwaptionEngine(PricingEngine):
    """Closed-form G2 engine for European swaptions.

    Used as the fast evaluator of the calibration objective. A Bermudan is
    priced as the European on its first exercise date, a lower bound.
    """

    def __init__(self, model, range_=6.0, intervals=16):
        super().__init__(model)
        self.range_ = float(range_)
        self.intervals = int(intervals)

    def price(self, data):
        times, coeffs = data.bond_coefficients(0)
        per_unit = self.model.swaption(
            data.payer,
            float(data.exercise_times[0]),
            times,
            coeffs,
            range_=self.range_,
            intervals=self.intervals,
        )
        return float(data.notional * per_unit)
