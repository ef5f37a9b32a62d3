"""Guest machine construction for hostvm-provisioner."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Callable, List, Optional, Tuple
from xml.etree.ElementTree import Element, SubElement, fromstring, register_namespace, tostring

from provisioner.constants import GUEST_AGENT_CHANNEL, METADATA_NS
from provisioner.exceptions import ProvisionerError
from provisioner.models import ErrorKind, Failed, MachineRecord, MachineSpec, Ok, StageResult
from provisioner.utils import ensure_directory, format_size, log, run

_UNIT_FACTORS = {
    "b": 1,
    "bytes": 1,
    "k": 1024,
    "kib": 1024,
    "m": 1024**2,
    "mib": 1024**2,
    "g": 1024**3,
    "gib": 1024**3,
    "t": 1024**4,
    "tib": 1024**4,
}
_BOOT_LABELS = {"disk": "hd", "cdrom": "cdrom", "interface": "network"}


def _element_to_str(root: Element) -> str:
    from xml.dom.minidom import parseString

    raw = tostring(root, encoding="unicode")
    return parseString(raw).documentElement.toprettyxml(indent="  ").strip()


def _to_bytes(element: Optional[Element]) -> Optional[int]:
    if element is None or not (element.text or "").strip():
        return None
    unit = element.get("unit", "KiB").lower()
    return int(element.text.strip()) * _UNIT_FACTORS.get(unit, 1024)


def create_qcow2_disk(path: Path, size_bytes: int) -> None:
    run(["qemu-img", "create", "-f", "qcow2", str(path), str(size_bytes)], capture_output=True)


def render_domain_xml(spec: MachineSpec, domain_type: str = "kvm") -> str:
    """Domain definition with compute, memory range, system disk and network attachment.

    libvirt has no memory floor: the balloon may shrink the guest below
    ``memory_min_bytes``. The minimum is kept only as advisory metadata
    under the provisioner namespace.
    """
    register_namespace("provisioner", METADATA_NS)
    domain = Element("domain", type=domain_type)
    SubElement(domain, "name").text = spec.name

    metadata = SubElement(domain, "metadata")
    SubElement(
        metadata,
        f"{{{METADATA_NS}}}machine",
        {
            "memory-min": str(spec.memory_min_bytes),
            "memory-startup": str(spec.memory_startup_bytes),
            "memory-max": str(spec.memory_max_bytes),
            "boot-image": spec.boot_media.display_label,
        },
    )

    SubElement(domain, "memory", unit="b").text = str(spec.memory_max_bytes)
    SubElement(domain, "currentMemory", unit="b").text = str(spec.memory_startup_bytes)
    SubElement(domain, "vcpu", placement="static").text = str(spec.vcpu_count)

    os_el = SubElement(domain, "os")
    SubElement(os_el, "type", arch="x86_64", machine="q35").text = "hvm"
    features = SubElement(domain, "features")
    SubElement(features, "acpi")
    SubElement(features, "apic")
    if domain_type == "kvm":
        SubElement(domain, "cpu", mode="host-passthrough")

    devices = SubElement(domain, "devices")

    disk = SubElement(devices, "disk", type="file", device="disk")
    SubElement(disk, "driver", name="qemu", type="qcow2")
    SubElement(disk, "source", file=str(spec.disk_path))
    SubElement(disk, "target", dev="vda", bus="virtio")
    SubElement(disk, "boot", order="2")

    iface = SubElement(devices, "interface", type="network")
    SubElement(iface, "source", network=spec.network.name)
    SubElement(iface, "model", type="virtio")

    SubElement(devices, "memballoon", model="virtio")
    serial = SubElement(devices, "serial", type="pty")
    SubElement(serial, "target", port="0")
    console = SubElement(devices, "console", type="pty")
    SubElement(console, "target", type="serial", port="0")
    SubElement(devices, "graphics", type="vnc", autoport="yes", listen="127.0.0.1")
    video = SubElement(devices, "video")
    SubElement(video, "model", type="virtio", heads="1", primary="yes")

    return _element_to_str(domain)


def render_boot_media_xml(iso_path: Path) -> str:
    cdrom = Element("disk", type="file", device="cdrom")
    SubElement(cdrom, "driver", name="qemu", type="raw")
    SubElement(cdrom, "source", file=str(iso_path))
    SubElement(cdrom, "target", dev="sda", bus="sata")
    SubElement(cdrom, "readonly")
    SubElement(cdrom, "boot", order="1")
    return _element_to_str(cdrom)


def render_integration_channel_xml() -> str:
    channel = Element("channel", type="unix")
    SubElement(channel, "target", type="virtio", name=GUEST_AGENT_CHANNEL)
    return _element_to_str(channel)


def disk_paths_from_xml(xml: str) -> List[Path]:
    """Backing files of hard-disk devices only; cdrom media is never included."""
    root = fromstring(xml)
    paths = []
    for disk in root.iterfind("devices/disk"):
        if disk.get("device", "disk") != "disk":
            continue
        source = disk.find("source")
        if source is not None and source.get("file"):
            paths.append(Path(source.get("file")))
    return paths


def describe_machine(xml: str) -> MachineRecord:
    root = fromstring(xml)
    meta = root.find(f"metadata/{{{METADATA_NS}}}machine")
    memory_min = int(meta.get("memory-min")) if meta is not None and meta.get("memory-min") else None

    boot_entries: List[Tuple[int, str]] = []
    boot_media: Optional[Path] = None
    network_name: Optional[str] = None
    devices = root.find("devices")
    for device in devices if devices is not None else []:
        boot = device.find("boot")
        label = _BOOT_LABELS.get(device.tag)
        if device.tag == "disk" and device.get("device") == "cdrom":
            label = "cdrom"
            source = device.find("source")
            if source is not None and source.get("file"):
                boot_media = Path(source.get("file"))
        if device.tag == "interface" and network_name is None:
            source = device.find("source")
            if source is not None:
                network_name = source.get("network") or source.get("bridge")
        if boot is not None and label is not None:
            boot_entries.append((int(boot.get("order", "0")), label))

    integration = any(
        channel.find("target") is not None and channel.find("target").get("name") == GUEST_AGENT_CHANNEL
        for channel in root.iterfind("devices/channel")
    )
    return MachineRecord(
        name=root.findtext("name", default=""),
        vcpu_count=int(root.findtext("vcpu", default="0")),
        memory_startup_bytes=_to_bytes(root.find("currentMemory")) or _to_bytes(root.find("memory")) or 0,
        memory_min_bytes=memory_min,
        memory_max_bytes=_to_bytes(root.find("memory")) or 0,
        disk_paths=disk_paths_from_xml(xml),
        boot_media_path=boot_media,
        network_name=network_name,
        boot_order=[label for _, label in sorted(boot_entries)],
        integration_channel=integration,
    )


class GuestMachineBuilder:
    def __init__(
        self,
        host,
        domain_type: str = "kvm",
        create_disk: Callable[[Path, int], None] = create_qcow2_disk,
    ) -> None:
        self.host = host
        self.domain_type = domain_type
        self.create_disk = create_disk

    def build(self, spec: MachineSpec, force_replace: bool = False) -> StageResult:
        try:
            exists = self.host.machine_exists(spec.name)
        except ProvisionerError as exc:
            return Failed(ErrorKind.MACHINE_CREATION, str(exc), step="lookup")

        if exists and not force_replace:
            log("ERROR", f"Machine '{spec.name}' already exists; use --force to replace it")
            return Failed(ErrorKind.ALREADY_EXISTS, spec.name)
        if exists:
            failure = self._remove_existing(spec)
            if failure is not None:
                return failure

        if spec.disk_path.exists():
            if not force_replace:
                return Failed(
                    ErrorKind.MACHINE_CREATION,
                    f"disk {spec.disk_path} already exists without a machine; use --force to recreate it",
                    step="create-disk",
                )
            log("WARN", f"Removing orphaned disk {spec.disk_path}")
            try:
                spec.disk_path.unlink()
            except OSError as exc:
                log("ERROR", f"Could not remove orphaned disk {spec.disk_path}: {exc}")
                return Failed(ErrorKind.MACHINE_CREATION, str(exc), step="create-disk")

        steps = (
            ("create-disk", self._create_disk),
            ("define", self._define),
            ("attach-media", self._attach_media),
            ("integration", self._enable_integration),
            ("metadata", self._save_metadata),
        )
        for step, action in steps:
            try:
                action(spec)
            except (ProvisionerError, subprocess.CalledProcessError, OSError) as exc:
                log("ERROR", f"Machine creation failed at '{step}': {exc}")
                return Failed(ErrorKind.MACHINE_CREATION, str(exc), step=step)

        try:
            record = describe_machine(self.host.machine_xml(spec.name))
        except ProvisionerError as exc:
            return Failed(ErrorKind.MACHINE_CREATION, str(exc), step="describe")
        log("SUCCESS", f"Machine '{spec.name}' defined")
        return Ok(record)

    def start(self, name: str) -> StageResult:
        try:
            self.host.start_machine(name)
        except ProvisionerError as exc:
            return Failed(ErrorKind.START, str(exc))
        log("SUCCESS", f"Machine '{name}' started")
        return Ok(name)

    def _remove_existing(self, spec: MachineSpec) -> Optional[Failed]:
        name = spec.name
        log("WARN", f"Replacing existing machine '{name}'")
        try:
            disks = disk_paths_from_xml(self.host.machine_xml(name))
            if self.host.machine_is_active(name):
                log("INFO", f"Stopping machine '{name}'")
                self.host.stop_machine(name)
            for disk in disks:
                log("INFO", f"Deleting disk {disk}")
                disk.unlink(missing_ok=True)
            self.host.undefine_machine(name)
            (spec.metadata_dir / f"{name}.xml").unlink(missing_ok=True)
        except (ProvisionerError, OSError) as exc:
            return Failed(ErrorKind.MACHINE_CREATION, str(exc), step="remove-existing")
        return None

    def _create_disk(self, spec: MachineSpec) -> None:
        log("INFO", f"Creating disk {spec.disk_path} ({format_size(spec.disk_size_bytes)})")
        self.create_disk(spec.disk_path, spec.disk_size_bytes)

    def _define(self, spec: MachineSpec) -> None:
        self.host.define_machine(render_domain_xml(spec, self.domain_type))

    def _attach_media(self, spec: MachineSpec) -> None:
        log("INFO", f"Attaching boot media {spec.boot_media.local_path}")
        self.host.attach_device(spec.name, render_boot_media_xml(spec.boot_media.local_path))

    def _enable_integration(self, spec: MachineSpec) -> None:
        self.host.attach_device(spec.name, render_integration_channel_xml())

    def _save_metadata(self, spec: MachineSpec) -> None:
        ensure_directory(spec.metadata_dir)
        (spec.metadata_dir / f"{spec.name}.xml").write_text(self.host.machine_xml(spec.name) + "\n")
