"""Host capability detection for hostvm-provisioner."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Set

from provisioner.constants import CPUINFO_PATH, KVM_DEVICE, PROC_STATUS_PATH, VIRT_CPU_FLAGS
from provisioner.models import CapabilityReport
from provisioner.utils import log


def _read_cpu_flags(cpuinfo_path: Path) -> Optional[Set[str]]:
    """Return the union of CPU flags, or None if cpuinfo cannot be read."""
    try:
        text = cpuinfo_path.read_text()
    except OSError:
        return None
    flags: Set[str] = set()
    for line in text.splitlines():
        key, _, value = line.partition(":")
        if key.strip() in {"flags", "Features"}:
            flags.update(value.split())
    return flags


def _kvm_device_usable(kvm_path: Path) -> bool:
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDONLY)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def _is_privileged(status_path: Path) -> bool:
    """Root, or a process holding a full effective capability set."""
    if os.geteuid() == 0:
        return True
    try:
        with open(status_path) as f:
            for line in f:
                if line.startswith("CapEff:"):
                    cap_val = int(line.split(":", 1)[1].strip(), 16)
                    # 0x3fffffffff (38 bits) or higher is a full set
                    return cap_val >= 0x3FFFFFFFFF
        return False
    except (OSError, ValueError):
        return False


class CapabilityProbe:
    """Read-only inspection of hardware virtualization support."""

    def __init__(
        self,
        cpuinfo_path: Path = CPUINFO_PATH,
        kvm_path: Path = KVM_DEVICE,
        status_path: Path = PROC_STATUS_PATH,
    ) -> None:
        self.cpuinfo_path = cpuinfo_path
        self.kvm_path = kvm_path
        self.status_path = status_path

    def probe(self) -> CapabilityReport:
        privileged = _is_privileged(self.status_path)
        if _kvm_device_usable(self.kvm_path):
            return CapabilityReport(True, privileged, f"{self.kvm_path} is available")

        flags = _read_cpu_flags(self.cpuinfo_path)
        if flags is None:
            log("DEBUG", f"Could not read {self.cpuinfo_path}")
            return CapabilityReport(None, privileged, f"{self.cpuinfo_path} is unreadable")

        found = flags & VIRT_CPU_FLAGS
        if found:
            return CapabilityReport(True, privileged, f"CPU flag {sorted(found)[0]} present")
        if "hypervisor" in flags:
            # Nested guests may hide vmx/svm until the outer hypervisor exposes them.
            return CapabilityReport(None, privileged, "running under a hypervisor without vmx/svm")
        return CapabilityReport(False, privileged, "CPU reports neither vmx nor svm")
