"""Data models for hostvm-provisioner."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Generic, List, Optional, TypeVar, Union

T = TypeVar("T")


class InstallState(str, Enum):
    NOT_INSTALLED = "not-installed"
    INSTALL_PENDING = "install-pending"
    INSTALLED = "installed"


class SwitchKind(str, Enum):
    EXTERNAL = "external"
    INTERNAL = "internal"
    PRIVATE = "private"
    OTHER = "other"


class ErrorKind(str, Enum):
    PREREQUISITE = "PrerequisiteError"
    INSTALL = "InstallError"
    STORAGE = "StorageError"
    NETWORK = "NetworkError"
    DOWNLOAD = "DownloadError"
    ALREADY_EXISTS = "AlreadyExistsError"
    MACHINE_CREATION = "MachineCreationError"
    START = "StartError"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Skipped:
    reason: str


@dataclass(frozen=True)
class Failed:
    kind: ErrorKind
    detail: str
    step: Optional[str] = None

    def describe(self) -> str:
        if self.step:
            return f"{self.kind.value} at step '{self.step}': {self.detail}"
        return f"{self.kind.value}: {self.detail}"


StageResult = Union[Ok[T], Skipped, Failed]


@dataclass(frozen=True)
class CapabilityReport:
    # None means the host could not be inspected conclusively.
    virtualization_supported: Optional[bool]
    privileged: bool
    detail: str = ""


@dataclass(frozen=True)
class SwitchDescriptor:
    name: str
    kind: SwitchKind
    bound_adapter: Optional[str] = None
    active: bool = True


@dataclass(frozen=True)
class ImageDefinition:
    key: str
    label: str
    url: str
    filename: str
    minimum_size_bytes: int


@dataclass(frozen=True)
class ImageDescriptor:
    source_url: str
    local_path: Path
    expected_minimum_size_bytes: int
    display_label: str

    def is_valid(self) -> bool:
        """A local image counts only when present and at least the threshold in size."""
        path = self.local_path
        return path.is_file() and path.stat().st_size >= self.expected_minimum_size_bytes


@dataclass(frozen=True)
class ProvisioningRequest:
    machine_name: str
    vm_store_path: Path
    disk_store_path: Path
    image_store_path: Path
    switch_name: Optional[str]
    memory_startup_bytes: int
    memory_min_bytes: int
    memory_max_bytes: int
    vcpu_count: int
    disk_size_bytes: int
    image: ImageDefinition
    force_replace: bool = False
    auto_start: bool = True
    auto_restart_on_pending: bool = False

    def labeled_paths(self) -> Dict[str, Path]:
        return {
            "machine metadata": self.vm_store_path,
            "disk images": self.disk_store_path,
            "boot images": self.image_store_path,
        }

    def image_descriptor(self) -> ImageDescriptor:
        return ImageDescriptor(
            source_url=self.image.url,
            local_path=self.image_store_path / self.image.filename,
            expected_minimum_size_bytes=self.image.minimum_size_bytes,
            display_label=self.image.label,
        )

    def machine_spec(self, boot_media: ImageDescriptor, network: SwitchDescriptor) -> "MachineSpec":
        return MachineSpec(
            name=self.machine_name,
            memory_startup_bytes=self.memory_startup_bytes,
            memory_min_bytes=self.memory_min_bytes,
            memory_max_bytes=self.memory_max_bytes,
            vcpu_count=self.vcpu_count,
            disk_size_bytes=self.disk_size_bytes,
            disk_path=self.disk_store_path / f"{self.machine_name}.qcow2",
            metadata_dir=self.vm_store_path / self.machine_name,
            boot_media=boot_media,
            network=network,
        )


@dataclass(frozen=True)
class MachineSpec:
    name: str
    memory_startup_bytes: int
    memory_min_bytes: int
    memory_max_bytes: int
    vcpu_count: int
    disk_size_bytes: int
    disk_path: Path
    metadata_dir: Path
    boot_media: ImageDescriptor
    network: SwitchDescriptor


@dataclass
class MachineRecord:
    name: str
    vcpu_count: int
    memory_startup_bytes: int
    memory_min_bytes: Optional[int]
    memory_max_bytes: int
    disk_paths: List[Path] = field(default_factory=list)
    boot_media_path: Optional[Path] = None
    network_name: Optional[str] = None
    boot_order: List[str] = field(default_factory=list)
    integration_channel: bool = False
