#!/usr/bin/env python3
"""
VM Cost Collector - vSphere

Estimates a monthly and yearly cost for every VM in a vCenter inventory,
writes the yearly estimate into each VM's notes and exports all estimates
to a timestamped CSV for trending.

Usage:
    python3 vmcost_collect.py --vcenter vcenter.example.com --user svc-vmcost@vsphere.local
    python3 vmcost_collect.py --config vmcost-config.yaml --output ./reports
    python3 vmcost_collect.py --config vmcost-config.yaml --dry-run
    python3 vmcost_collect.py --generate-config > vmcost-config.yaml
"""
import argparse
import logging
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime
from fnmatch import fnmatchcase
from typing import Iterator, List, Mapping, Optional, Sequence, Tuple

from vmcost.config import (
    generate_sample_config,
    get_vsphere_settings,
    load_config,
    load_os_patterns,
    load_rate_table,
)
from vmcost.constants import (
    CSV_HEADER,
    DEFAULT_CURRENCY_SYMBOL,
    DEFAULT_OS_PATTERNS,
    NOTE_PREFIX,
    VEEAM_NOTE_MARKER,
)
from vmcost.cost_model import compute_cost
from vmcost.models import CostRecord, RateTable, VMProfile
from vmcost.utils import (
    AuthError,
    ConfigError,
    PlatformError,
    ProgressTracker,
    csv_filename,
    format_currency,
    print_summary_table,
    setup_logging,
    write_csv,
)
from vmcost.vsphere import VSphereSession

logger = logging.getLogger(__name__)


# =============================================================================
# Inventory Walker
# =============================================================================

def build_profile(session: VSphereSession, vm) -> VMProfile:
    """Read the resource profile of one VM; unreadable values fall back to zero/None."""
    powered_on = session.is_powered_on(vm)
    return VMProfile(
        name=session.get_name(vm),
        used_storage_gb=session.get_used_storage_gb(vm, powered_on=powered_on),
        memory_gb=session.get_memory_gb(vm),
        vcpu_count=session.get_vcpu_count(vm),
        guest_os_name=session.get_guest_os_name(vm),
        powered_on=powered_on,
    )


def filter_vms(session: VSphereSession, vms: Sequence, name_patterns: Optional[Sequence[str]]) -> List:
    """Keep VMs whose name matches any of the shell-style patterns (all when none given)."""
    if not name_patterns:
        return list(vms)
    return [
        vm for vm in vms
        if any(fnmatchcase(session.get_name(vm), pattern) for pattern in name_patterns)
    ]


def _log_record(record: CostRecord, currency_symbol: str) -> None:
    def fmt(amount):
        return format_currency(amount, currency_symbol)

    logger.info(
        f"{record.vm_name}: Infra={fmt(record.infra)} Hosting={fmt(record.hosting)} "
        f"OS={fmt(record.os)} Storage={fmt(record.storage)} Backup={fmt(record.backup)} "
        f"Memory={fmt(record.memory)} CPU={fmt(record.cpu)} "
        f"Monthly={fmt(record.total_monthly)} Yearly={fmt(record.total_yearly)} "
        f"(Windows={record.is_windows}, RedHat={record.is_redhat})"
    )


def walk_inventory(
    session: VSphereSession,
    vms: Sequence,
    rates: RateTable,
    os_patterns: Mapping[str, str] = DEFAULT_OS_PATTERNS,
    currency_symbol: str = DEFAULT_CURRENCY_SYMBOL,
) -> Iterator[Tuple[object, CostRecord]]:
    """
    Yield (vm, cost record) for each VM in enumeration order.

    The caller runs the sinks for a record before the next VM is read. A VM
    whose profile cannot be read still yields a record, costed from an empty
    profile.
    """
    for vm in vms:
        try:
            profile = build_profile(session, vm)
        except Exception as e:
            name = session.get_name(vm)
            logger.warning(f"Failed to read VM {name}, costing it with an empty profile: {e}")
            profile = VMProfile(name=name)
        if not profile.powered_on:
            logger.debug(f"VM {profile.name} is not powered on, used storage not measured")
        record = compute_cost(profile, rates, os_patterns)
        _log_record(record, currency_symbol)
        yield vm, record


# =============================================================================
# Sink Writer
# =============================================================================

def compose_note(total_yearly: float, currency_symbol: str = DEFAULT_CURRENCY_SYMBOL) -> str:
    return f"{NOTE_PREFIX}{format_currency(total_yearly, currency_symbol)}"


def merge_note(new_text: str, current_text: Optional[str]) -> str:
    """
    Combine the cost line with the existing notes.

    Notes written by Veeam are kept below the cost line; any other existing
    content is replaced.
    """
    if current_text and VEEAM_NOTE_MARKER in current_text:
        return f"{new_text}\n{current_text}"
    return new_text


def update_note(
    session: VSphereSession,
    vm,
    record: CostRecord,
    currency_symbol: str = DEFAULT_CURRENCY_SYMBOL,
) -> str:
    """Write the yearly estimate into the VM notes. Returns the text written."""
    current = session.get_notes(vm)
    text = merge_note(compose_note(record.total_yearly, currency_symbol), current)
    session.set_notes(vm, text)
    return text


class CsvAccumulator:
    """Ordered in-memory CSV rows, flushed once at the end of the run."""

    def __init__(self):
        self.rows: List[dict] = []

    def append(self, record: CostRecord) -> None:
        self.rows.append(record.to_csv_row())

    def __len__(self):
        return len(self.rows)


def flush_csv(rows: List[dict], output_dir: str = ".", now: Optional[datetime] = None) -> str:
    """Write the accumulated rows to vmcosts-<timestamp>.csv and return its path."""
    os.makedirs(output_dir, exist_ok=True)
    filepath = os.path.join(output_dir, csv_filename(now))
    write_csv(rows, filepath, fieldnames=CSV_HEADER)
    return filepath


# =============================================================================
# Run
# =============================================================================

@dataclass
class RunResult:
    records: List[CostRecord] = field(default_factory=list)
    csv_path: str = ""
    notes_updated: int = 0
    notes_failed: int = 0
    notes_skipped: int = 0


def run(
    session: VSphereSession,
    rates: RateTable,
    output_dir: str = ".",
    os_patterns: Mapping[str, str] = DEFAULT_OS_PATTERNS,
    currency_symbol: str = DEFAULT_CURRENCY_SYMBOL,
    dry_run: bool = False,
    vm_names: Optional[Sequence[str]] = None,
    show_progress: bool = True,
) -> RunResult:
    """
    Estimate costs for every VM, update notes and export the CSV.

    Raises:
        PlatformError: If the VM inventory cannot be listed (nothing is written)
    """
    vms = filter_vms(session, session.list_vms(), vm_names)
    logger.info(f"Found {len(vms)} VMs")

    result = RunResult()
    accumulator = CsvAccumulator()

    with ProgressTracker(
        "vSphere", total_vms=len(vms), currency_symbol=currency_symbol, show_progress=show_progress
    ) as tracker:
        for vm, record in walk_inventory(session, vms, rates, os_patterns, currency_symbol):
            tracker.start_vm(record.vm_name)

            if dry_run:
                result.notes_skipped += 1
                tracker.note_skipped()
            else:
                try:
                    update_note(session, vm, record, currency_symbol)
                    result.notes_updated += 1
                    tracker.note_updated()
                except Exception as e:
                    logger.warning(f"Failed to update notes for VM {record.vm_name}: {e}")
                    result.notes_failed += 1
                    tracker.note_failed()

            accumulator.append(record)
            result.records.append(record)
            tracker.add_record(record)

    result.csv_path = flush_csv(accumulator.rows, output_dir)

    if result.notes_failed:
        logger.warning(f"Notes update failed for {result.notes_failed} VM(s)")

    return result


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='VM Cost Collector - vSphere')
    parser.add_argument('--config', help='YAML config file (default: ./vmcost-config.yaml if present)')
    parser.add_argument('--vcenter', help='vCenter hostname')
    parser.add_argument('--user', help='vCenter username (password from VMCOST_VCENTER_PASSWORD)')
    parser.add_argument('--port', type=int, help='vCenter port (default: 443)')
    parser.add_argument('--insecure', action='store_true', help='Skip TLS certificate validation')
    parser.add_argument('--output', help='Output directory for the CSV and log file (default: .)')
    parser.add_argument('--log-level', help='Logging level (default: INFO)')
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Compute and export costs without updating VM notes'
    )
    parser.add_argument(
        '--vm-name',
        action='append',
        help='Only process VMs whose name matches this shell-style pattern (repeatable)'
    )
    parser.add_argument(
        '--generate-config',
        action='store_true',
        help='Print a sample config file and exit'
    )

    args = parser.parse_args(argv)

    if args.generate_config:
        print(generate_sample_config())
        return 0

    try:
        config = load_config(args)
    except (ConfigError, FileNotFoundError) as e:
        setup_logging()
        logger.error(f"Invalid configuration: {e}")
        return 1

    vsphere_password = (config.get('vsphere') or {}).get('password') or os.environ.get('VMCOST_VCENTER_PASSWORD')
    setup_logging(config['log_level'], output_dir=config['output'], secrets=[vsphere_password])

    try:
        rates = load_rate_table(config)
        os_patterns = load_os_patterns(config)
        settings = get_vsphere_settings(config)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    logger.info(f"Rates: {rates.to_dict()}")

    try:
        session = VSphereSession.connect(**settings)
    except AuthError as e:
        logger.error(str(e))
        logger.error("Check the vCenter username and password.")
        return 1
    except PlatformError as e:
        logger.error(str(e))
        logger.error("Check the vCenter hostname, port and network access.")
        return 1

    with session:
        try:
            result = run(
                session,
                rates,
                output_dir=config['output'],
                os_patterns=os_patterns,
                currency_symbol=config['currency_symbol'],
                dry_run=config['dry_run'],
                vm_names=config.get('vm_names'),
            )
        except PlatformError as e:
            logger.error(str(e))
            return 1

    print_summary_table(result.records, config['currency_symbol'])
    print(f"Output: {result.csv_path}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
