"""
Data models for the VM cost collector.
"""
import math
from dataclasses import asdict, dataclass, fields
from enum import Flag
from typing import Any, Dict, List, Mapping, Optional

from .constants import CSV_HEADER, RATE_FIELDS


class GuestOSFamily(Flag):
    """
    Licensing family of a guest OS.

    A guest name matching both patterns carries both flags, so OS costs
    stay additive.
    """
    OTHER = 0
    WINDOWS = 1
    REDHAT = 2
    UNKNOWN = 4

    @property
    def label(self) -> str:
        if self is GuestOSFamily.OTHER:
            return "Other"
        parts = []
        if GuestOSFamily.WINDOWS in self:
            parts.append("Windows")
        if GuestOSFamily.REDHAT in self:
            parts.append("RedHat")
        if GuestOSFamily.UNKNOWN in self:
            parts.append("Unknown")
        return "+".join(parts)


@dataclass(frozen=True)
class RateTable:
    """Monthly USD cost rates, loaded once per run."""
    fixed_infra: float
    fixed_hosting: float
    fixed_win: float
    fixed_rhel: float
    var_storage_per_gb: float
    var_backup_per_gb: float
    var_cpu_per_proc: float
    var_mem_per_gb: float

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"Rate {f.name} must be a number, got {value!r}")
            if not math.isfinite(value):
                raise ValueError(f"Rate {f.name} must be a finite number, got {value}")
            if value < 0:
                raise ValueError(f"Rate {f.name} must be non-negative, got {value}")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RateTable":
        """
        Build a rate table from a mapping of rate names to amounts.

        Raises:
            ValueError: If a key is not a recognized rate, a rate is missing,
                or a value is negative, infinite, NaN or not numeric
        """
        unknown = sorted(set(data) - set(RATE_FIELDS))
        if unknown:
            raise ValueError(f"Unrecognized rate option(s): {', '.join(unknown)}")
        missing = [name for name in RATE_FIELDS if name not in data]
        if missing:
            raise ValueError(f"Missing rate option(s): {', '.join(missing)}")
        return cls(**{name: data[name] for name in RATE_FIELDS})

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization."""
        return asdict(self)


@dataclass(frozen=True)
class VMProfile:
    """Resource profile of a single VM as read from the inventory."""
    name: str
    used_storage_gb: float = 0.0
    memory_gb: float = 0.0
    vcpu_count: int = 0
    guest_os_name: Optional[str] = None
    powered_on: bool = False


@dataclass(frozen=True)
class CostRecord:
    """Estimated monthly cost breakdown for one VM."""
    vm_name: str
    os_family: GuestOSFamily
    infra: float
    hosting: float
    os: float
    storage: float
    backup: float
    memory: float
    cpu: float
    total_monthly: float
    total_yearly: float

    @property
    def is_windows(self) -> bool:
        return GuestOSFamily.WINDOWS in self.os_family

    @property
    def is_redhat(self) -> bool:
        return GuestOSFamily.REDHAT in self.os_family

    def to_csv_row(self) -> Dict[str, Any]:
        """
        Row keyed by the CSV header.

        Backup cost is reported inside the Storage column so that the
        component columns sum to TotalMonthly.
        """
        values: List[Any] = [
            self.vm_name,
            self.infra,
            self.hosting,
            self.os,
            self.storage + self.backup,
            self.memory,
            self.cpu,
            self.total_monthly,
            self.total_yearly,
        ]
        return dict(zip(CSV_HEADER, values))

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization."""
        d = asdict(self)
        d['os_family'] = self.os_family.label
        return d
