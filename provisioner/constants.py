"""Global constants and default paths for hostvm-provisioner."""

from __future__ import annotations

import os
import re
from pathlib import Path

from provisioner.models import ImageDefinition, SwitchKind

LIBVIRT_URI = os.environ.get("LIBVIRT_URI", "qemu:///system")
TRUTHY = {"1", "true", "yes", "on"}

DEFAULT_MACHINE_NAME = "provisioned-vm"
DEFAULT_VM_STORE = Path("/var/lib/hostvm-provisioner/machines")
DEFAULT_DISK_STORE = Path("/var/lib/libvirt/images")
DEFAULT_IMAGE_STORE = Path("/var/lib/hostvm-provisioner/isos")
DEFAULT_MEMORY = "4G"
DEFAULT_DISK_SIZE = "40G"
DEFAULT_VCPUS = "2"
DEFAULT_IMAGE_VERSION = "ubuntu-24.04"

MIN_MEMORY_BYTES = 512 * 1024**2

SIZE_RE = re.compile(r"^(\d+)([KMGT]?)(i?B)?$", re.IGNORECASE)
SIZE_UNITS = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

# Exit codes reported to the caller.
EXIT_OK = 0
EXIT_FAILED = 1
EXIT_REBOOT_PENDING = 2
EXIT_PRECONDITION = 3

KNOWN_IMAGES = (
    ImageDefinition(
        key="ubuntu-24.04",
        label="Ubuntu Server 24.04 LTS",
        url="https://releases.ubuntu.com/24.04/ubuntu-24.04.3-live-server-amd64.iso",
        filename="ubuntu-24.04-live-server-amd64.iso",
        minimum_size_bytes=1024**3,
    ),
    ImageDefinition(
        key="ubuntu-22.04",
        label="Ubuntu Server 22.04 LTS",
        url="https://releases.ubuntu.com/22.04/ubuntu-22.04.5-live-server-amd64.iso",
        filename="ubuntu-22.04-live-server-amd64.iso",
        minimum_size_bytes=1024**3,
    ),
    ImageDefinition(
        key="debian-12",
        label="Debian 12 (netinst)",
        url="https://cdimage.debian.org/cdimage/archive/latest-oldstable/amd64/iso-cd/debian-12-amd64-netinst.iso",
        filename="debian-12-amd64-netinst.iso",
        minimum_size_bytes=300 * 1024**2,
    ),
)

# Switch selection ranks; lower wins.
SWITCH_PRIORITY = {
    SwitchKind.EXTERNAL: 0,
    SwitchKind.INTERNAL: 1,
    SwitchKind.PRIVATE: 2,
    SwitchKind.OTHER: 3,
}
FALLBACK_INTERNAL_SWITCH = "provisioner-internal"
FALLBACK_EXTERNAL_SWITCH = "provisioner-external"
FALLBACK_INTERNAL_SUBNET = "192.168.150"
SYSFS_NET_DIR = Path("/sys/class/net")

# Hypervisor role packages per package backend.
ROLE_PACKAGES = {
    "apt": ("qemu-system-x86", "qemu-utils", "libvirt-daemon-system", "libvirt-clients", "ovmf"),
    "dnf": ("qemu-kvm", "qemu-img", "libvirt", "libvirt-client", "edk2-ovmf"),
}
ROLE_SERVICE = "libvirtd"
REBOOT_REQUIRED_MARKER = Path("/var/run/reboot-required")

CPUINFO_PATH = Path("/proc/cpuinfo")
KVM_DEVICE = Path("/dev/kvm")
PROC_STATUS_PATH = Path("/proc/self/status")
VIRT_CPU_FLAGS = {"vmx", "svm"}

DOWNLOAD_CHUNK_SIZE = 1024 * 256  # 256 KiB
DOWNLOAD_TIMEOUT = 60
USER_AGENT = "hostvm-provisioner/1.0"

GUEST_AGENT_CHANNEL = "org.qemu.guest_agent.0"
METADATA_NS = "https://hostvm-provisioner.invalid/xmlns/machine/1.0"
