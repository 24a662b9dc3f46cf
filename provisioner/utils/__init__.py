"""Utility modules for provisioning workflows."""

from .paths import read_json, safe_write_json, sanitize_name
from .retry import (
    DEFAULT_READY_DELAYS,
    RetryExhaustedError,
    RetryPolicy,
    RetryWaiter,
    call_with_retry,
    is_present,
)

__all__ = [
    "DEFAULT_READY_DELAYS",
    "RetryExhaustedError",
    "RetryPolicy",
    "RetryWaiter",
    "call_with_retry",
    "is_present",
    "read_json",
    "safe_write_json",
    "sanitize_name",
]
