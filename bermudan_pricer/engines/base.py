import abc


class PricingEngine(abc.ABC):
    """Abstract interface for the swaption engines.

    Engines hold the model by reference and read its parameters at pricing
    time, so a calibration that mutates the model is seen by the next call.
    Pricers that must not observe such updates pass ``model.snapshot()``.

    ``price`` takes a ``SwaptionData`` (see
    ``BermudanSwaptionSpec.to_engine_data``) and returns its NPV in currency
    units of the instrument notional.
    """

    def __init__(self, model):
        self.model = model

    @abc.abstractmethod
    def price(self, data):
        raise NotImplementedError
