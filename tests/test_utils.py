"""
Tests for vmcost/utils.py utility functions.

Covers:
- format_currency formatting
- format_bytes_to_gb conversion
- csv_filename timestamp layout
- write_csv (local files, header-only output)
- retry_with_backoff decorator
- AuthError and is_auth_error detection
- ProgressTracker plain-text mode
- print_summary_table formatting
- setup_logging handlers
"""
import csv
import logging
import os
import sys
from datetime import datetime
from unittest.mock import Mock

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from vmcost.cost_model import compute_cost
from vmcost.constants import DEFAULT_RATES
from vmcost.models import RateTable, VMProfile
from vmcost.utils import (
    AuthError,
    PlatformError,
    ProgressTracker,
    RedactingFilter,
    csv_filename,
    format_bytes_to_gb,
    format_currency,
    is_auth_error,
    print_summary_table,
    redact_log_message,
    retry_with_backoff,
    setup_logging,
    write_csv,
)


def make_record(name="vm01", storage_gb=100.0, guest="Windows Server 2016"):
    profile = VMProfile(name=name, used_storage_gb=storage_gb, memory_gb=8, vcpu_count=2,
                        guest_os_name=guest, powered_on=True)
    return compute_cost(profile, RateTable.from_dict(DEFAULT_RATES))


# =============================================================================
# format_currency Tests
# =============================================================================

class TestFormatCurrency:
    """Tests for format_currency function."""

    def test_two_decimals(self):
        assert format_currency(1234.56) == "$1234.56"

    def test_rounds(self):
        assert format_currency(520.8) == "$520.80"
        assert format_currency(0.005001) == "$0.01"

    def test_no_thousands_separator(self):
        assert format_currency(1234567.0) == "$1234567.00"

    def test_custom_symbol(self):
        assert format_currency(10, "EUR ") == "EUR 10.00"


# =============================================================================
# format_bytes_to_gb Tests
# =============================================================================

class TestFormatBytesToGb:
    """Tests for format_bytes_to_gb function."""

    def test_zero_bytes(self):
        assert format_bytes_to_gb(0) == 0.0

    def test_none_bytes(self):
        assert format_bytes_to_gb(None) == 0.0

    def test_one_gb(self):
        assert format_bytes_to_gb(1024 ** 3) == 1.0

    def test_unrounded(self):
        assert format_bytes_to_gb(1536 * 1024 ** 2) == 1.5
        assert format_bytes_to_gb(1) == 1 / 1024 ** 3


# =============================================================================
# csv_filename Tests
# =============================================================================

class TestCsvFilename:
    """Tests for csv_filename function."""

    def test_morning(self):
        assert csv_filename(datetime(2026, 3, 7, 9, 5, 4)) == "vmcosts-03-07-2026_09-05-04.csv"

    def test_twelve_hour_clock(self):
        """Afternoon hours wrap to 01-12 with no AM/PM marker."""
        assert csv_filename(datetime(2026, 3, 7, 21, 5, 4)) == "vmcosts-03-07-2026_09-05-04.csv"

    def test_midnight_is_twelve(self):
        assert csv_filename(datetime(2026, 12, 31, 0, 0, 0)) == "vmcosts-12-31-2026_12-00-00.csv"

    def test_defaults_to_now(self):
        name = csv_filename()
        assert name.startswith("vmcosts-")
        assert name.endswith(".csv")


# =============================================================================
# write_csv Tests
# =============================================================================

class TestWriteCsv:
    """Tests for write_csv function."""

    def test_write_rows(self, tmp_path):
        path = tmp_path / "out.csv"
        write_csv([{"VM": "a", "TotalMonthly": 1.5}, {"VM": "b", "TotalMonthly": 2}], str(path))

        with open(path, newline='') as f:
            rows = list(csv.DictReader(f))
        assert rows == [{"VM": "a", "TotalMonthly": "1.5"}, {"VM": "b", "TotalMonthly": "2"}]

    def test_header_only_with_fieldnames(self, tmp_path):
        path = tmp_path / "empty.csv"
        write_csv([], str(path), fieldnames=["VM", "Infra"])

        assert path.read_text().strip() == "VM,Infra"

    def test_no_rows_no_fieldnames_writes_nothing(self, tmp_path):
        path = tmp_path / "none.csv"
        write_csv([], str(path))
        assert not path.exists()


# =============================================================================
# retry_with_backoff Tests
# =============================================================================

class TestRetryWithBackoff:
    """Tests for retry_with_backoff decorator."""

    def test_success_first_try(self):
        func = Mock(return_value="ok")
        decorated = retry_with_backoff(max_attempts=3, min_wait=0.01, max_wait=0.02)(func)
        assert decorated() == "ok"
        assert func.call_count == 1

    def test_retries_then_succeeds(self):
        func = Mock(side_effect=[ConnectionError("reset"), "ok"])
        decorated = retry_with_backoff(max_attempts=3, min_wait=0.01, max_wait=0.02,
                                       exceptions=(OSError,))(func)
        assert decorated() == "ok"
        assert func.call_count == 2

    def test_reraises_after_max_attempts(self):
        func = Mock(side_effect=ConnectionError("down"))
        decorated = retry_with_backoff(max_attempts=2, min_wait=0.01, max_wait=0.02,
                                       exceptions=(OSError,))(func)
        with pytest.raises(ConnectionError):
            decorated()
        assert func.call_count == 2

    def test_other_exceptions_not_retried(self):
        func = Mock(side_effect=ValueError("bad"))
        decorated = retry_with_backoff(max_attempts=3, min_wait=0.01, max_wait=0.02,
                                       exceptions=(OSError,))(func)
        with pytest.raises(ValueError):
            decorated()
        assert func.call_count == 1


# =============================================================================
# Error Tests
# =============================================================================

class InvalidLogin(Exception):
    """Stand-in named like the vSphere fault class."""


class TestAuthErrors:
    """Tests for AuthError and is_auth_error."""

    def test_auth_error_attributes(self):
        original = InvalidLogin("bad password")
        err = AuthError("rejected", provider="vsphere", original_error=original)

        assert str(err) == "rejected"
        assert err.provider == "vsphere"
        assert err.original_error is original
        assert isinstance(err, PlatformError)

    def test_vsphere_fault_names(self):
        assert is_auth_error(InvalidLogin())

        NotAuthenticated = type("NotAuthenticated", (Exception,), {})
        assert is_auth_error(NotAuthenticated())

    def test_other_errors(self):
        assert not is_auth_error(ConnectionError("refused"))
        assert not is_auth_error(ValueError("x"))


# =============================================================================
# ProgressTracker Tests
# =============================================================================

class TestProgressTracker:
    """Tests for ProgressTracker in plain mode."""

    def test_counts_and_totals(self, capsys):
        with ProgressTracker("vSphere", total_vms=2, show_progress=False) as tracker:
            for record in (make_record("a"), make_record("b")):
                tracker.start_vm(record.vm_name)
                tracker.note_updated()
                tracker.add_record(record)
            tracker.note_failed()

        assert tracker.completed_vms == 2
        assert tracker.notes_updated == 2
        assert tracker.notes_failed == 1
        assert tracker.total_yearly == pytest.approx(tracker.total_monthly * 12)

        out = capsys.readouterr().out
        assert "vSphere Cost Estimate Complete" in out
        assert "Notes Failed:  1" in out

    def test_exceptions_propagate(self):
        with pytest.raises(RuntimeError):
            with ProgressTracker("vSphere", show_progress=False):
                raise RuntimeError("boom")


# =============================================================================
# print_summary_table Tests
# =============================================================================

class TestPrintSummaryTable:
    """Tests for print_summary_table function."""

    def test_empty(self, capsys):
        print_summary_table([])
        assert "No VMs found." in capsys.readouterr().out

    def test_rows_and_total(self, capsys):
        records = [make_record("web01"), make_record("db01", guest="Red Hat Enterprise Linux 9")]
        print_summary_table(records)

        out = capsys.readouterr().out
        assert "web01" in out
        assert "RedHat" in out
        assert "TOTAL" in out
        total = sum(r.total_yearly for r in records)
        assert format_currency(total) in out


# =============================================================================
# setup_logging Tests
# =============================================================================

class TestSetupLogging:
    """Tests for setup_logging function."""

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        yield
        for handler in root.handlers:
            if handler not in saved_handlers:
                handler.close()
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)

    def test_console_only(self):
        setup_logging("DEBUG")
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1

    def test_file_handler(self, tmp_path):
        setup_logging("INFO", output_dir=str(tmp_path))
        root = logging.getLogger()
        assert len(root.handlers) == 2
        assert any(name.startswith("vmcost_log_") for name in os.listdir(tmp_path))

    def test_unknown_level_defaults_to_info(self):
        setup_logging("LOUD")
        assert logging.getLogger().level == logging.INFO

    def test_file_log_redacts_password(self, tmp_path):
        setup_logging("INFO", output_dir=str(tmp_path), secrets=["S3cr3t!", None])
        logger = logging.getLogger("vmcost.test")
        logger.error("Failed to connect to vCenter vc01: login with S3cr3t! rejected")
        logger.error("retrying with %s", "S3cr3t!")
        logger.error("connect(host=vc01, pwd=hunter2)")
        for handler in logging.getLogger().handlers:
            handler.flush()

        [log_name] = [n for n in os.listdir(tmp_path) if n.startswith("vmcost_log_")]
        with open(tmp_path / log_name) as f:
            text = f.read()

        assert "S3cr3t!" not in text
        assert "hunter2" not in text
        assert "login with *** rejected" in text
        assert "retrying with ***" in text
        assert "pwd=***" in text


class TestRedactLogMessage:
    """Tests for redact_log_message and RedactingFilter."""

    def test_credential_pairs(self):
        assert redact_log_message("password=abc123 user=svc") == "password=*** user=svc"
        assert redact_log_message("Password: abc123, host=vc01") == "Password: ***, host=vc01"
        assert redact_log_message("token=xyz&next=1") == "token=***&next=1"

    def test_known_secret(self):
        assert redact_log_message("bad login pw-9 for svc", secrets=["pw-9"]) == "bad login *** for svc"

    def test_plain_message_untouched(self):
        message = "No vCenter password set (vsphere.password or VMCOST_VCENTER_PASSWORD)"
        assert redact_log_message(message) == message

    def test_filter_renders_args(self):
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "login %s as %s", ("svc", "pw-9"), None)
        assert RedactingFilter(["pw-9"]).filter(record)
        assert record.getMessage() == "login svc as ***"
