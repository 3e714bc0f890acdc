"""
vSphere platform access for the VM cost collector.

Wraps a pyVmomi service instance: connect, enumerate VMs, read the values
the cost model needs, and read/write the VM notes (annotation) field.

Per-VM getters degrade to a default value when the property cannot be read;
connection and enumeration failures raise.
"""
import logging
from typing import List, Optional

from pyVim import connect
from pyVim.task import WaitForTask
from pyVmomi import vim

from .constants import (
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_VCENTER_PORT,
    MB_PER_GB,
    POWER_STATE_ON,
    PROVIDER_VSPHERE,
)
from .utils import AuthError, PlatformError, format_bytes_to_gb, is_auth_error, retry_with_backoff

logger = logging.getLogger(__name__)

UNKNOWN_VM_NAME = "<unknown>"


def _fallback_name(vm) -> str:
    try:
        moid = vm._moId
    except Exception:
        return UNKNOWN_VM_NAME
    return moid if isinstance(moid, str) and moid else UNKNOWN_VM_NAME


def _safe_name(vm) -> str:
    try:
        return vm.name
    except Exception:
        return _fallback_name(vm)


@retry_with_backoff(max_attempts=DEFAULT_RETRY_ATTEMPTS, exceptions=(OSError,))
def _smart_connect(host: str, username: str, password: str, port: int, verify_ssl: bool):
    return connect.SmartConnect(
        host=host,
        user=username,
        pwd=password,
        port=port,
        disableSslCertValidation=not verify_ssl,
    )


class VSphereSession:
    """Explicit handle on a connected vCenter, passed to every platform call."""

    def __init__(self, service_instance, host: str = ""):
        self.si = service_instance
        self.host = host

    @classmethod
    def connect(
        cls,
        host: str,
        username: str,
        password: str,
        port: int = DEFAULT_VCENTER_PORT,
        verify_ssl: bool = True,
    ) -> "VSphereSession":
        """
        Connect to vCenter Server.

        Transport errors are retried with backoff; rejected credentials are not.

        Raises:
            AuthError: If vCenter rejects the credentials
            PlatformError: If vCenter cannot be reached
        """
        logger.info(f"Connecting to vCenter: {host}:{port}")
        try:
            si = _smart_connect(host, username, password, port, verify_ssl)
        except Exception as e:
            if is_auth_error(e):
                raise AuthError(
                    f"vCenter {host} rejected credentials for {username}: {e}",
                    provider=PROVIDER_VSPHERE,
                    original_error=e,
                ) from e
            raise PlatformError(f"Failed to connect to vCenter {host}: {e}") from e
        logger.info("Connected to vCenter successfully")
        return cls(si, host)

    def disconnect(self) -> None:
        """Disconnect from vCenter Server."""
        if self.si:
            connect.Disconnect(self.si)
            self.si = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
        return False

    # =========================================================================
    # Inventory
    # =========================================================================

    def list_vms(self) -> List[vim.VirtualMachine]:
        """
        Get all VMs from vCenter inventory, in the order vCenter returns them.

        Raises:
            PlatformError: If the inventory cannot be listed
        """
        if not self.si:
            raise PlatformError("Not connected to vCenter")

        try:
            content = self.si.RetrieveContent()
            container_view = content.viewManager.CreateContainerView(
                content.rootFolder, [vim.VirtualMachine], True
            )
            try:
                vms = list(container_view.view)
            finally:
                container_view.Destroy()
        except Exception as e:
            raise PlatformError(f"Failed to list VMs: {e}") from e

        return vms

    # =========================================================================
    # Per-VM queries
    # =========================================================================

    @staticmethod
    def get_name(vm) -> str:
        """VM name, or its managed object id when the name cannot be read."""
        try:
            return vm.name
        except Exception as e:
            fallback = _fallback_name(vm)
            logger.debug(f"Name unavailable for VM {fallback}: {e}")
            return fallback

    @staticmethod
    def is_powered_on(vm) -> bool:
        try:
            return str(vm.runtime.powerState) == POWER_STATE_ON
        except Exception as e:
            logger.debug(f"Power state unavailable for VM {_safe_name(vm)}: {e}")
            return False

    @staticmethod
    def get_guest_os_name(vm) -> Optional[str]:
        """Guest OS full name from VMware Tools, None when the guest is not reporting."""
        try:
            return vm.guest.guestFullName or None
        except Exception as e:
            logger.debug(f"Guest OS name unavailable for VM {_safe_name(vm)}: {e}")
            return None

    def get_used_storage_gb(self, vm, powered_on: Optional[bool] = None) -> float:
        """
        Used (committed) storage across all datastores, in GB.

        Only measured while the VM is powered on; a powered-off VM reports 0
        even when it has disks. Pass powered_on when the power state was
        already read for this VM.
        """
        if powered_on is None:
            powered_on = self.is_powered_on(vm)
        if not powered_on:
            return 0.0
        try:
            usage = vm.storage.perDatastoreUsage or []
            return sum(format_bytes_to_gb(u.committed or 0) for u in usage)
        except Exception as e:
            logger.debug(f"Used storage unavailable for VM {_safe_name(vm)}: {e}")
            return 0.0

    @staticmethod
    def get_memory_gb(vm) -> float:
        try:
            return (vm.summary.config.memorySizeMB or 0) / MB_PER_GB
        except Exception as e:
            logger.debug(f"Memory size unavailable for VM {_safe_name(vm)}: {e}")
            return 0.0

    @staticmethod
    def get_vcpu_count(vm) -> int:
        try:
            return vm.summary.config.numCpu or 0
        except Exception as e:
            logger.debug(f"vCPU count unavailable for VM {_safe_name(vm)}: {e}")
            return 0

    # =========================================================================
    # Notes (annotation)
    # =========================================================================

    @staticmethod
    def get_notes(vm) -> str:
        """Current notes text; raises if the VM configuration cannot be read."""
        return vm.config.annotation or ""

    @staticmethod
    def set_notes(vm, text: str) -> None:
        """Replace the notes text and wait for the reconfigure task to finish."""
        spec = vim.vm.ConfigSpec(annotation=text)
        task = vm.ReconfigVM_Task(spec=spec)
        WaitForTask(task)
