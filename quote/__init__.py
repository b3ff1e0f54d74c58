"""
Solar Quote Engine Package
Versioned population of solar quote calculator workbooks from logical field inputs.
"""

__version__ = "1.0.0"
__author__ = "Solar Quote Team"

from .runner import QuoteService, run_quote
from .pipeline import QuoteRequest, PopulationResult

__all__ = ["QuoteService", "run_quote", "QuoteRequest", "PopulationResult"]
