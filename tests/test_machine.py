"""Tests for provisioner.machine module."""

from __future__ import annotations

import subprocess
from dataclasses import replace
from pathlib import Path
from unittest.mock import patch
from xml.etree.ElementTree import fromstring

import pytest

from provisioner.constants import GUEST_AGENT_CHANNEL, METADATA_NS
from provisioner.exceptions import HostError
from provisioner.machine import (
    GuestMachineBuilder,
    create_qcow2_disk,
    describe_machine,
    disk_paths_from_xml,
    render_boot_media_xml,
    render_domain_xml,
    render_integration_channel_xml,
)
from provisioner.models import ErrorKind, Failed, Ok, SwitchDescriptor, SwitchKind

from conftest import FakeHost, write_fake_disk


@pytest.fixture
def spec(provisioning_request):
    provisioning_request.disk_store_path.mkdir(parents=True)
    descriptor = provisioning_request.image_descriptor()
    return provisioning_request.machine_spec(descriptor, SwitchDescriptor("default", SwitchKind.INTERNAL))


@pytest.fixture
def builder(fake_host):
    return GuestMachineBuilder(fake_host, domain_type="kvm", create_disk=write_fake_disk)


class TestRenderDomainXml:
    def test_compute_and_memory(self, spec):
        root = fromstring(render_domain_xml(spec))
        assert root.get("type") == "kvm"
        assert root.findtext("name") == "test-vm"
        assert root.findtext("vcpu") == "2"
        assert int(root.findtext("memory")) == spec.memory_max_bytes
        assert int(root.findtext("currentMemory")) == spec.memory_startup_bytes
        meta = root.find(f"metadata/{{{METADATA_NS}}}machine")
        assert int(meta.get("memory-min")) == spec.memory_min_bytes

    def test_disk_and_network(self, spec):
        root = fromstring(render_domain_xml(spec))
        disk = root.find("devices/disk")
        assert disk.find("source").get("file") == str(spec.disk_path)
        assert disk.find("boot").get("order") == "2"
        assert root.find("devices/interface/source").get("network") == "default"

    def test_qemu_domain_has_no_host_cpu(self, spec):
        root = fromstring(render_domain_xml(spec, domain_type="qemu"))
        assert root.get("type") == "qemu"
        assert root.find("cpu") is None


class TestDeviceXml:
    def test_boot_media_first(self, tmp_path):
        root = fromstring(render_boot_media_xml(tmp_path / "x.iso"))
        assert root.get("device") == "cdrom"
        assert root.find("boot").get("order") == "1"
        assert root.find("readonly") is not None

    def test_integration_channel(self):
        root = fromstring(render_integration_channel_xml())
        assert root.find("target").get("name") == GUEST_AGENT_CHANNEL


class TestDescribeMachine:
    def test_disk_paths_exclude_cdrom(self):
        xml = (
            "<domain><devices>"
            "<disk device='disk'><source file='/a.qcow2'/></disk>"
            "<disk device='cdrom'><source file='/b.iso'/></disk>"
            "</devices></domain>"
        )
        assert disk_paths_from_xml(xml) == [Path("/a.qcow2")]

    def test_units_converted(self):
        xml = (
            "<domain><name>vm</name><vcpu>1</vcpu>"
            "<memory unit='KiB'>2048</memory><currentMemory unit='MiB'>1</currentMemory>"
            "<devices/></domain>"
        )
        record = describe_machine(xml)
        assert record.memory_max_bytes == 2048 * 1024
        assert record.memory_startup_bytes == 1024**2
        assert record.memory_min_bytes is None


class TestGuestMachineBuilder:
    def test_build_fresh(self, builder, fake_host, spec):
        result = builder.build(spec)
        assert isinstance(result, Ok)
        record = result.value
        assert record.name == "test-vm"
        assert record.vcpu_count == 2
        assert record.memory_startup_bytes == spec.memory_startup_bytes
        assert record.memory_min_bytes == spec.memory_min_bytes
        assert record.memory_max_bytes == spec.memory_max_bytes
        assert record.disk_paths == [spec.disk_path]
        assert record.boot_media_path == spec.boot_media.local_path
        assert record.boot_order == ["cdrom", "hd"]
        assert record.network_name == "default"
        assert record.integration_channel is True
        assert spec.disk_path.exists()
        assert (spec.metadata_dir / "test-vm.xml").exists()
        assert "test-vm" not in fake_host.active

    def test_refuses_existing_without_force(self, builder, fake_host, spec):
        builder.build(spec)
        before = fake_host.machines["test-vm"]
        result = builder.build(spec)
        assert result == Failed(ErrorKind.ALREADY_EXISTS, "test-vm")
        assert fake_host.machines["test-vm"] == before

    def test_force_replace_applies_new_values(self, builder, fake_host, spec):
        builder.build(spec)
        fake_host.active.add("test-vm")
        bigger = replace(spec, vcpu_count=4, memory_max_bytes=8 * 1024**3)
        result = builder.build(bigger, force_replace=True)
        assert isinstance(result, Ok)
        assert result.value.vcpu_count == 4
        assert result.value.memory_max_bytes == 8 * 1024**3
        assert "stop_machine" in fake_host.calls
        assert "undefine_machine" in fake_host.calls
        assert list(fake_host.machines) == ["test-vm"]

    def test_force_replace_deletes_old_disks(self, builder, fake_host, spec, tmp_path):
        builder.build(spec)
        moved = replace(spec, disk_path=tmp_path / "disks" / "other.qcow2")
        builder.build(moved, force_replace=True)
        assert not spec.disk_path.exists()
        assert moved.disk_path.exists()

    def test_orphaned_disk_requires_force(self, builder, spec):
        spec.disk_path.write_bytes(b"leftover")
        result = builder.build(spec)
        assert isinstance(result, Failed)
        assert result.step == "create-disk"
        assert isinstance(builder.build(spec, force_replace=True), Ok)

    def test_unremovable_orphaned_disk_fails_step(self, builder, fake_host, spec):
        spec.disk_path.mkdir()
        result = builder.build(spec, force_replace=True)
        assert isinstance(result, Failed)
        assert result.kind is ErrorKind.MACHINE_CREATION
        assert result.step == "create-disk"
        assert not fake_host.machine_exists(spec.name)

    def test_failure_names_step(self, builder, fake_host, spec):
        fake_host.fail_on["attach_device"] = HostError("bus full")
        result = builder.build(spec)
        assert isinstance(result, Failed)
        assert result.kind is ErrorKind.MACHINE_CREATION
        assert result.step == "attach-media"
        assert "bus full" in result.detail

    def test_disk_creation_failure(self, fake_host, spec):
        def broken(path, size):
            raise subprocess.CalledProcessError(1, ["qemu-img"])

        result = GuestMachineBuilder(fake_host, create_disk=broken).build(spec)
        assert result.step == "create-disk"
        assert fake_host.machines == {}

    def test_lookup_failure(self, builder, fake_host, spec):
        fake_host.fail_on["machine_exists"] = HostError("connection lost")
        result = builder.build(spec)
        assert result.step == "lookup"

    def test_start(self, builder, fake_host, spec):
        builder.build(spec)
        assert builder.start("test-vm") == Ok("test-vm")
        assert "test-vm" in fake_host.active

    def test_start_failure(self, builder, fake_host):
        fake_host.fail_on["start_machine"] = HostError("no memory")
        result = builder.start("test-vm")
        assert isinstance(result, Failed)
        assert result.kind is ErrorKind.START


def test_create_qcow2_disk_invokes_qemu_img(tmp_path):
    with patch("provisioner.machine.run") as mock_run:
        create_qcow2_disk(tmp_path / "d.qcow2", 1024)
    cmd = mock_run.call_args.args[0]
    assert cmd[:4] == ["qemu-img", "create", "-f", "qcow2"]
    assert cmd[-1] == "1024"
