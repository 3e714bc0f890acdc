"""
Cost model: maps a VM resource profile and a rate table to a cost breakdown.

Pure arithmetic, no I/O. Amounts are kept unrounded; rounding happens only
when a value is formatted for display or for the VM notes.
"""
from fnmatch import fnmatchcase
from typing import Mapping, Optional

from .constants import DEFAULT_OS_PATTERNS, MONTHS_PER_YEAR
from .models import CostRecord, GuestOSFamily, RateTable, VMProfile


def _matches(name: str, pattern: str) -> bool:
    return fnmatchcase(name.lower(), pattern.lower())


def classify_guest_os(
    guest_os_name: Optional[str],
    patterns: Mapping[str, str] = DEFAULT_OS_PATTERNS,
) -> GuestOSFamily:
    """
    Classify a guest OS full name into a licensing family.

    Args:
        guest_os_name: Full name reported by guest tools, or None when the
            guest is not reporting (powered off, tools not running)
        patterns: Wildcard patterns keyed by 'windows' and 'redhat'

    Returns:
        UNKNOWN when no name is available, OTHER when neither pattern
        matches, otherwise the matched families combined
    """
    if not guest_os_name:
        return GuestOSFamily.UNKNOWN

    family = GuestOSFamily.OTHER
    if _matches(guest_os_name, patterns["windows"]):
        family |= GuestOSFamily.WINDOWS
    if _matches(guest_os_name, patterns["redhat"]):
        family |= GuestOSFamily.REDHAT
    return family


def compute_cost(
    profile: VMProfile,
    rates: RateTable,
    patterns: Mapping[str, str] = DEFAULT_OS_PATTERNS,
) -> CostRecord:
    """Compute the monthly and yearly cost breakdown for one VM."""
    family = classify_guest_os(profile.guest_os_name, patterns)
    is_windows = int(GuestOSFamily.WINDOWS in family)
    is_redhat = int(GuestOSFamily.REDHAT in family)

    infra = rates.fixed_infra
    hosting = rates.fixed_hosting
    os_cost = rates.fixed_win * is_windows + rates.fixed_rhel * is_redhat
    storage = profile.used_storage_gb * rates.var_storage_per_gb
    backup = profile.used_storage_gb * rates.var_backup_per_gb
    memory = profile.memory_gb * rates.var_mem_per_gb
    cpu = profile.vcpu_count * rates.var_cpu_per_proc

    total_monthly = infra + hosting + os_cost + storage + backup + memory + cpu

    return CostRecord(
        vm_name=profile.name,
        os_family=family,
        infra=infra,
        hosting=hosting,
        os=os_cost,
        storage=storage,
        backup=backup,
        memory=memory,
        cpu=cpu,
        total_monthly=total_monthly,
        total_yearly=total_monthly * MONTHS_PER_YEAR,
    )
