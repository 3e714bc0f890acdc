"""
Utility functions for the VM cost collector.

Logging Level Standards:
------------------------
- ERROR: Failures that stop the run
         "Failed to connect to vCenter: {e}"
- WARNING: Per-VM sink failures that leave a VM without an updated note
           "Failed to update notes for VM {name}: {e}"
- INFO: Progress messages, per-VM cost lines, counts
        "Found 42 VMs"
- DEBUG: Per-VM queries that degrade to a default value
         "Guest OS name unavailable for VM {name}: {e}"
"""
import csv
import logging
import os
import re
import sys
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, TypeVar

from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .constants import (
    BYTES_PER_GB,
    CSV_FILENAME_PREFIX,
    CSV_FILENAME_SUFFIX,
    CSV_TIMESTAMP_FORMAT,
    DEFAULT_CURRENCY_SYMBOL,
    VSPHERE_AUTH_FAULT_NAMES,
)

if TYPE_CHECKING:
    from rich.progress import TaskID

    from .models import CostRecord

logger = logging.getLogger(__name__)

# Type variable for generic function decorator
F = TypeVar('F', bound=Callable[..., Any])


def retry_with_backoff(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 60,
    exceptions: tuple = (Exception,)
) -> Callable[[F], F]:
    """
    Decorator for retrying functions with exponential backoff.

    Args:
        max_attempts: Maximum number of retry attempts (default: 3)
        min_wait: Minimum wait time between retries in seconds (default: 1)
        max_wait: Maximum wait time between retries in seconds (default: 60)
        exceptions: Tuple of exception types to retry on (default: all Exceptions)

    Returns:
        Decorated function with retry logic

    Example:
        @retry_with_backoff(max_attempts=5, exceptions=(ConnectionError, TimeoutError))
        def connect():
            ...
    """
    def decorator(func: F) -> F:
        return retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
            retry=retry_if_exception_type(exceptions),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )(func)
    return decorator


# =============================================================================
# Errors
# =============================================================================

class VMCostError(Exception):
    """Base class for errors that stop a collection run."""


class ConfigError(VMCostError):
    """Raised when the configuration (rates, vCenter settings) is invalid."""


class PlatformError(VMCostError):
    """Raised when vCenter cannot be reached or the inventory cannot be listed."""


class AuthError(PlatformError):
    """Custom exception for authentication/authorization failures.

    Raised when vCenter rejects the supplied credentials, which should stop
    the run rather than being retried or logged and skipped.
    """
    def __init__(self, message: str, provider: str, original_error: Optional[Exception] = None):
        self.provider = provider
        self.original_error = original_error
        super().__init__(message)


def is_auth_error(exc: Exception) -> bool:
    """
    Check if an exception represents an authentication/authorization error.

    pyVmomi raises vSphere faults as exception classes named after the
    fault (vim.fault.InvalidLogin, vim.fault.NotAuthenticated, ...).
    """
    return type(exc).__name__ in VSPHERE_AUTH_FAULT_NAMES


# =============================================================================
# Progress Tracking
# =============================================================================

class ProgressTracker:
    """
    Progress tracker for a cost run with rich display.

    Falls back to simple print statements if stdout is not a TTY
    (e.g., when run from cron or piping output).

    Usage:
        with ProgressTracker("vSphere", total_vms=len(vms)) as tracker:
            for vm in vms:
                tracker.start_vm(vm.name)
                record = ...
                tracker.add_record(record)
    """

    def __init__(
        self,
        provider: str,
        total_vms: int = 0,
        currency_symbol: str = DEFAULT_CURRENCY_SYMBOL,
        show_progress: bool = True
    ):
        self.provider = provider
        self.total_vms = total_vms
        self.currency_symbol = currency_symbol
        self.show_progress = show_progress and sys.stdout.isatty()

        # Counters
        self.completed_vms = 0
        self.total_monthly = 0.0
        self.total_yearly = 0.0
        self.notes_updated = 0
        self.notes_failed = 0
        self.notes_skipped = 0
        self.current_vm = ""

        self._console: Optional[Console] = None
        self._progress: Optional[Progress] = None
        self._main_task: Optional["TaskID"] = None

    def __enter__(self):
        if self.show_progress:
            self._console = Console()
            self._progress = Progress(
                SpinnerColumn(),
                TextColumn("[bold blue]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                console=self._console,
                transient=False,
            )
            self._main_task = self._progress.add_task(
                f"{self.provider} Cost Estimate", total=self.total_vms or 1
            )
            self._progress.start()
        else:
            print(f"\n{'='*60}")
            print(f"{self.provider} Cost Estimate Starting")
            print(f"{'='*60}")
            print(f"VMs: {self.total_vms}")
            print()

        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.show_progress:
            assert self._progress is not None
            assert self._console is not None
            self._progress.stop()
            self._console.print()
            self._print_summary_rich()
        else:
            self._print_summary_plain()
        return False

    def start_vm(self, vm_name: str):
        """Mark the start of processing a VM."""
        self.current_vm = vm_name
        if self.show_progress:
            assert self._progress is not None
            assert self._main_task is not None
            self._progress.update(
                self._main_task,
                description=f"{self.provider} [{vm_name}]"
            )

    def add_record(self, record: "CostRecord"):
        """Add a computed cost record to the running totals."""
        self.completed_vms += 1
        self.total_monthly += record.total_monthly
        self.total_yearly += record.total_yearly
        if self.show_progress:
            assert self._progress is not None
            assert self._main_task is not None
            self._progress.update(self._main_task, advance=1)

    def note_updated(self):
        self.notes_updated += 1

    def note_failed(self):
        self.notes_failed += 1

    def note_skipped(self):
        self.notes_skipped += 1

    def _print_summary_rich(self):
        """Print a formatted summary using rich."""
        table = Table(title=f"{self.provider} Cost Summary", show_header=False)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")

        table.add_row("VMs", f"{self.completed_vms:,}")
        table.add_row("Total Monthly", format_currency(self.total_monthly, self.currency_symbol))
        table.add_row("Total Yearly", format_currency(self.total_yearly, self.currency_symbol))
        table.add_row("Notes Updated", f"{self.notes_updated:,}")
        if self.notes_failed:
            table.add_row("Notes Failed", f"[red]{self.notes_failed:,}[/red]")
        if self.notes_skipped:
            table.add_row("Notes Skipped", f"{self.notes_skipped:,}")

        assert self._console is not None
        self._console.print(Panel(table))

    def _print_summary_plain(self):
        """Print a plain text summary."""
        print(f"\n{'='*60}")
        print(f"{self.provider} Cost Estimate Complete")
        print(f"{'='*60}")
        print(f"  VMs:           {self.completed_vms:,}")
        print(f"  Total Monthly: {format_currency(self.total_monthly, self.currency_symbol)}")
        print(f"  Total Yearly:  {format_currency(self.total_yearly, self.currency_symbol)}")
        print(f"  Notes Updated: {self.notes_updated:,}")
        if self.notes_failed:
            print(f"  Notes Failed:  {self.notes_failed:,}")
        if self.notes_skipped:
            print(f"  Notes Skipped: {self.notes_skipped:,}")
        print()


# =============================================================================
# Formatting
# =============================================================================

def format_currency(amount: float, symbol: str = DEFAULT_CURRENCY_SYMBOL) -> str:
    """Format an amount as two-decimal fixed point with a currency prefix."""
    return f"{symbol}{amount:.2f}"


def format_bytes_to_gb(bytes_value: int) -> float:
    """Convert bytes to GB (unrounded)."""
    if not bytes_value:
        return 0.0
    return bytes_value / BYTES_PER_GB


def csv_filename(now: Optional[datetime] = None) -> str:
    """
    Build the export filename for a run.

    Uses local time on a 12-hour clock without an AM/PM marker, so two runs
    exactly twelve hours apart produce the same name.
    """
    now = now or datetime.now()
    return f"{CSV_FILENAME_PREFIX}{now.strftime(CSV_TIMESTAMP_FORMAT)}{CSV_FILENAME_SUFFIX}"


# =============================================================================
# Logging
# =============================================================================

REDACTED = "***"

# key=value or key: value credential pairs, e.g. from a connection error string
_CREDENTIAL_PATTERN = re.compile(r'\b(password|passwd|pwd|secret|token)(\s*[=:]\s*)([^\s,;&\'"]+)', re.IGNORECASE)


def redact_log_message(message: str, secrets: Iterable[str] = ()) -> str:
    """Mask credential pairs and any of the given secret values in a log message."""
    if not message:
        return message
    for secret in secrets:
        if secret:
            message = message.replace(secret, REDACTED)
    return _CREDENTIAL_PATTERN.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}", message)


class RedactingFilter(logging.Filter):
    """
    Logging filter that redacts credentials from log messages.

    The message is rendered with its args before redaction, so a secret
    passed as a format argument is masked too.
    """

    def __init__(self, secrets: Iterable[str] = ()):
        super().__init__()
        self.secrets = [s for s in secrets if s]

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg:
            record.msg = redact_log_message(record.getMessage(), self.secrets)
            record.args = None
        return True


def setup_logging(
    level: str = "INFO",
    output_dir: Optional[str] = None,
    secrets: Iterable[str] = (),
) -> logging.Logger:
    """
    Setup logging configuration with console and optional file output.

    Both handlers mask credential pairs and the given secret values.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        output_dir: If provided, also write logs to a file in this directory
        secrets: Literal values (e.g. the vCenter password) to mask

    Returns:
        Logger instance
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Clear existing handlers to avoid duplicates
    root_logger.handlers.clear()

    redacting_filter = RedactingFilter(secrets)

    # Console handler (stderr)
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(redacting_filter)
    root_logger.addHandler(console_handler)

    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
        timestamp = datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')
        log_file = os.path.join(output_dir, f"vmcost_log_{timestamp}.log")

        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(redacting_filter)
        root_logger.addHandler(file_handler)

        root_logger.info(f"Logging to: {log_file}")

    return logging.getLogger(__name__)


# =============================================================================
# Output
# =============================================================================

def write_csv(data: List[Dict], filepath: str, fieldnames: Optional[List[str]] = None) -> None:
    """
    Write rows to a CSV file.

    The header is written even when there are no rows, as long as
    fieldnames are given.
    """
    if not fieldnames:
        if not data:
            return
        fieldnames = list(data[0].keys())

    with open(filepath, 'w', newline='') as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        writer.writerows(data)
    print(f"Wrote {filepath}")


def print_summary_table(records: List["CostRecord"], currency_symbol: str = DEFAULT_CURRENCY_SYMBOL) -> None:
    """Print a per-VM cost table to console."""
    if not records:
        print("No VMs found.")
        return

    headers = ["VM", "OS", "Monthly", "Yearly"]
    rows = []

    for r in records:
        rows.append([
            r.vm_name,
            r.os_family.label,
            format_currency(r.total_monthly, currency_symbol),
            format_currency(r.total_yearly, currency_symbol),
        ])

    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))

    total_monthly = format_currency(sum(r.total_monthly for r in records), currency_symbol)
    total_yearly = format_currency(sum(r.total_yearly for r in records), currency_symbol)
    widths[2] = max(widths[2], len(total_monthly))
    widths[3] = max(widths[3], len(total_yearly))

    header_line = " | ".join(h.ljust(widths[i]) for i, h in enumerate(headers))
    separator = "-+-".join("-" * w for w in widths)

    print("\n" + header_line)
    print(separator)

    for row in rows:
        print(" | ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)))

    print(separator)
    print(f"{'TOTAL'.ljust(widths[0])} | {' '.ljust(widths[1])} | {total_monthly.ljust(widths[2])} | {total_yearly.ljust(widths[3])}")
    print()
