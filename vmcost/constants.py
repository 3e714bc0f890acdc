"""
Constants for the VM cost collector.

This module defines all magic strings and numbers used across the codebase
to prevent typos, ensure consistency, and make maintenance easier.
"""

# =============================================================================
# Byte/Size Conversion Constants
# =============================================================================

BYTES_PER_GB = 1024 ** 3
MB_PER_GB = 1024

MONTHS_PER_YEAR = 12

# =============================================================================
# Default Configuration Values
# =============================================================================

DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_VCENTER_PORT = 443
DEFAULT_CURRENCY_SYMBOL = "$"
DEFAULT_OUTPUT_DIR = "."
DEFAULT_LOG_LEVEL = "INFO"

PROVIDER_VSPHERE = "vsphere"

# =============================================================================
# Rate Table
# =============================================================================

# Monthly USD amounts, one per recognized rate option
RATE_FIELDS = (
    "fixed_infra",
    "fixed_hosting",
    "fixed_win",
    "fixed_rhel",
    "var_storage_per_gb",
    "var_backup_per_gb",
    "var_cpu_per_proc",
    "var_mem_per_gb",
)

DEFAULT_RATES = {
    "fixed_infra": 10.0,
    "fixed_hosting": 10.0,
    "fixed_win": 10.0,
    "fixed_rhel": 5.0,
    "var_storage_per_gb": 0.05,
    "var_backup_per_gb": 0.02,
    "var_cpu_per_proc": 2.0,
    "var_mem_per_gb": 0.3,
}

# =============================================================================
# Guest OS Detection
# =============================================================================

# Shell-style wildcards, matched case-insensitively against the guest full name
OS_PATTERN_WINDOWS = "Windows Server*"
OS_PATTERN_REDHAT = "Red*"

DEFAULT_OS_PATTERNS = {
    "windows": OS_PATTERN_WINDOWS,
    "redhat": OS_PATTERN_REDHAT,
}

# =============================================================================
# vSphere
# =============================================================================

POWER_STATE_ON = "poweredOn"

# Fault type names that mean the credentials or session were rejected
VSPHERE_AUTH_FAULT_NAMES = {
    'InvalidLogin',
    'NotAuthenticated',
    'NoPermission',
}

# =============================================================================
# Annotation (VM notes)
# =============================================================================

NOTE_PREFIX = "Yearly VM Cost Estimate: "
# Case-sensitive marker written by Veeam Backup & Replication into VM notes
VEEAM_NOTE_MARKER = "Veeam"

# =============================================================================
# CSV Export
# =============================================================================

CSV_FILENAME_PREFIX = "vmcosts-"
CSV_FILENAME_SUFFIX = ".csv"
# 12-hour clock without an AM/PM marker
CSV_TIMESTAMP_FORMAT = "%m-%d-%Y_%I-%M-%S"

CSV_HEADER = [
    "VM",
    "Infra",
    "Hosting",
    "OS",
    "Storage",
    "Memory",
    "CPU",
    "TotalMonthly",
    "TotalYearly",
]
