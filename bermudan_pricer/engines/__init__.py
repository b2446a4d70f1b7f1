from .analytic import G2AnalyticSwaptionEngine
from .base import PricingEngine
from .fdm import G2FdmEngine
from .tree import G2TreeEngine
