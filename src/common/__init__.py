"""Common utilities."""

from .utils import sanitize_client_order_id
from .symbols import normalize_symbol
from .timeframes import timeframe_minutes

__all__ = ["sanitize_client_order_id", "normalize_symbol", "timeframe_minutes"]
