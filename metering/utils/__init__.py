"""Utilities package."""

from metering.utils.logging import configure_logging, get_logger
from metering.utils.periods import align_to_minute, billing_months, months_bounds
from metering.utils.retry import CallResult, call_with_retry

__all__ = [
    "configure_logging",
    "get_logger",
    "align_to_minute",
    "billing_months",
    "months_bounds",
    "CallResult",
    "call_with_retry",
]
