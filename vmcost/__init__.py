"""
VM cost collector shared library.
"""
# Import constants module for easy access
from . import constants
from .constants import (
    CSV_HEADER,
    DEFAULT_OS_PATTERNS,
    DEFAULT_RATES,
    RATE_FIELDS,
)
from .cost_model import classify_guest_os, compute_cost
from .models import CostRecord, GuestOSFamily, RateTable, VMProfile
from .utils import (
    AuthError,
    ConfigError,
    PlatformError,
    VMCostError,
    format_currency,
    setup_logging,
    write_csv,
)

__all__ = [
    # Constants
    'constants',
    'CSV_HEADER',
    'DEFAULT_OS_PATTERNS',
    'DEFAULT_RATES',
    'RATE_FIELDS',
    # Models
    'CostRecord',
    'GuestOSFamily',
    'RateTable',
    'VMProfile',
    # Cost model
    'classify_guest_os',
    'compute_cost',
    # Utils
    'AuthError',
    'ConfigError',
    'PlatformError',
    'VMCostError',
    'format_currency',
    'setup_logging',
    'write_csv',
]
