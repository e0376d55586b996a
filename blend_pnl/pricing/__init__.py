"""Price resolution."""
from .resolver import PriceResolver

__all__ = ["PriceResolver"]
