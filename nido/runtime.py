"""Host platform detection for nido."""

from __future__ import annotations

import platform
from pathlib import Path
from typing import List, Optional, Tuple, Union

from nido.constants import KVM_DEVICE, QMP_SUFFIX
from nido.utils import kvm_available, log

Endpoint = Union[Path, Tuple[str, int]]


class HostPlatform:
    """Acceleration flags and control-socket transport for one host OS."""

    name = "generic"
    unix_sockets = True

    def accel_args(self) -> List[str]:
        # TCG: slow but runs everywhere
        return ["-cpu", "qemu64"]

    def control_endpoint(self, run_dir: Path, vm_name: str) -> Optional[Endpoint]:
        """Where the QMP socket for ``vm_name`` will listen, or None if unreachable."""
        if not self.unix_sockets:
            return None
        return Path(run_dir) / f"{vm_name}{QMP_SUFFIX}"

    def qmp_args(self, run_dir: Path, vm_name: str) -> List[str]:
        endpoint = self.control_endpoint(run_dir, vm_name)
        if isinstance(endpoint, Path):
            return ["-qmp", f"unix:{endpoint},server,nowait"]
        return ["-qmp", "tcp:127.0.0.1:0,server,nowait"]

    def accel_checks(self) -> List[Tuple[str, bool, str]]:
        return []


class LinuxPlatform(HostPlatform):
    name = "linux"

    def __init__(self, kvm_device: str = KVM_DEVICE) -> None:
        self.kvm_device = kvm_device

    def accel_args(self) -> List[str]:
        if kvm_available(self.kvm_device):
            return ["-enable-kvm", "-cpu", "host"]
        log("WARN", f"{self.kvm_device} unavailable; falling back to TCG emulation")
        return super().accel_args()

    def accel_checks(self) -> List[Tuple[str, bool, str]]:
        return [("Accel: KVM", kvm_available(self.kvm_device), f"{self.kvm_device} accessibility")]


class DarwinPlatform(HostPlatform):
    name = "darwin"

    def accel_args(self) -> List[str]:
        return ["-accel", "hvf", "-cpu", "host"]


class WindowsPlatform(HostPlatform):
    name = "windows"
    # QEMU on Windows only exposes QMP over TCP; boot keys are skipped.
    unix_sockets = False

    def accel_args(self) -> List[str]:
        return ["-accel", "whpx", "-cpu", "host"]


def detect_platform(system: Optional[str] = None) -> HostPlatform:
    """Pick the strategy for the current host once, at construction time."""
    system = (system or platform.system()).lower()
    if system == "linux":
        host: HostPlatform = LinuxPlatform()
    elif system == "darwin":
        host = DarwinPlatform()
    elif system == "windows":
        host = WindowsPlatform()
    else:
        host = HostPlatform()
        log("WARN", f"Unknown host platform '{system}'; hardware acceleration disabled")
    log("DEBUG", f"Host platform: {host.name}")
    return host
