"""Shared test fixtures and in-memory host fakes."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set
from xml.etree.ElementTree import fromstring, tostring

import pytest

from provisioner.config import ENV_VARS
from provisioner.exceptions import HostError, TransportError
from provisioner.images import ImageAcquirer, ImageTransport
from provisioner.installer import PackageBackend
from provisioner.models import CapabilityReport, ImageDefinition, ProvisioningRequest, SwitchDescriptor
from provisioner.network import classify_network_xml


class FakeHost:
    """Dictionary-backed stand-in for LibvirtHost."""

    def __init__(self, switches: Optional[Sequence[SwitchDescriptor]] = None) -> None:
        self.switches: List[SwitchDescriptor] = list(switches or [])
        self.defined_switch_xml: List[str] = []
        self.machines: Dict[str, str] = {}
        self.active: Set[str] = set()
        self.fail_on: Dict[str, Exception] = {}
        self.calls: List[str] = []
        self.closed = False

    def _record(self, method: str) -> None:
        self.calls.append(method)
        if method in self.fail_on:
            raise self.fail_on[method]

    def close(self) -> None:
        self.closed = True

    def list_switches(self) -> List[SwitchDescriptor]:
        self._record("list_switches")
        return list(self.switches)

    def activate_switch(self, name: str) -> None:
        self._record("activate_switch")
        self.switches = [replace(s, active=True) if s.name == name else s for s in self.switches]

    def define_switch(self, xml: str) -> None:
        self._record("define_switch")
        self.defined_switch_xml.append(xml)
        self.switches.append(classify_network_xml(xml))

    def machine_exists(self, name: str) -> bool:
        self._record("machine_exists")
        return name in self.machines

    def machine_xml(self, name: str) -> str:
        self._record("machine_xml")
        if name not in self.machines:
            raise HostError(f"Domain {name} not found")
        return self.machines[name]

    def machine_is_active(self, name: str) -> bool:
        self._record("machine_is_active")
        return name in self.active

    def stop_machine(self, name: str) -> None:
        self._record("stop_machine")
        self.active.discard(name)

    def undefine_machine(self, name: str) -> None:
        self._record("undefine_machine")
        del self.machines[name]

    def define_machine(self, xml: str) -> None:
        self._record("define_machine")
        name = fromstring(xml).findtext("name")
        self.machines[name] = xml

    def attach_device(self, name: str, xml: str) -> None:
        self._record("attach_device")
        root = fromstring(self.machines[name])
        root.find("devices").append(fromstring(xml))
        self.machines[name] = tostring(root, encoding="unicode")

    def start_machine(self, name: str) -> None:
        self._record("start_machine")
        self.active.add(name)


class FakeTransport(ImageTransport):
    def __init__(self, name: str = "fake", payload: bytes = b"", error: Optional[str] = None) -> None:
        self.name = name
        self.payload = payload
        self.error = error
        self.calls = 0

    def fetch(self, url, destination: Path, progress=None) -> None:
        self.calls += 1
        if self.error:
            raise TransportError(self.error)
        destination.write_bytes(self.payload)
        if progress is not None:
            progress(len(self.payload), len(self.payload))


class FakeBackend(PackageBackend):
    name = "fake"

    def __init__(self, installed: Sequence[str] = (), pending_after_install: bool = False) -> None:
        super().__init__(packages=("qemu-kvm", "libvirt"))
        self.installed = set(installed)
        self.pending = False
        self.pending_after_install = pending_after_install
        self.install_calls = 0
        self.install_error: Optional[Exception] = None

    def is_installed(self, package: str) -> bool:
        return package in self.installed

    def install(self, packages) -> None:
        self.install_calls += 1
        if self.install_error is not None:
            raise self.install_error
        self.installed.update(packages)
        self.pending = self.pending_after_install

    def reboot_pending(self) -> bool:
        return self.pending


class FakeProbe:
    def __init__(self, supported: Optional[bool] = True, privileged: bool = True) -> None:
        self.report = CapabilityReport(supported, privileged, "test probe")

    def probe(self) -> CapabilityReport:
        return self.report


def write_fake_disk(path: Path, size_bytes: int) -> None:
    path.write_bytes(b"QFI\xfb")


@pytest.fixture
def fake_host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def small_image() -> ImageDefinition:
    return ImageDefinition(
        key="test-image",
        label="Test ISO",
        url="https://example.com/test.iso",
        filename="test.iso",
        minimum_size_bytes=1024,
    )


@pytest.fixture
def provisioning_request(tmp_path, small_image) -> ProvisioningRequest:
    return ProvisioningRequest(
        machine_name="test-vm",
        vm_store_path=tmp_path / "machines",
        disk_store_path=tmp_path / "disks",
        image_store_path=tmp_path / "isos",
        switch_name=None,
        memory_startup_bytes=2 * 1024**3,
        memory_min_bytes=1024**3,
        memory_max_bytes=4 * 1024**3,
        vcpu_count=2,
        disk_size_bytes=20 * 1024**3,
        image=small_image,
    )


@pytest.fixture
def good_transport() -> FakeTransport:
    return FakeTransport(name="primary", payload=b"x" * 4096)


@pytest.fixture
def quiet_acquirer(good_transport) -> ImageAcquirer:
    return ImageAcquirer(
        primary=good_transport,
        secondary=FakeTransport(name="secondary", error="secondary should not run"),
        show_progress=False,
    )


@pytest.fixture
def clean_env(monkeypatch):
    """Clear every environment variable the request builder reads."""
    for key in ENV_VARS.values():
        monkeypatch.delenv(key, raising=False)
    monkeypatch.delenv("PROVISION_CONFIG", raising=False)
