"""Tests for provisioner.installer module."""

from __future__ import annotations

import subprocess
from unittest.mock import patch

import pytest

from provisioner.installer import AptBackend, DnfBackend, HypervisorInstaller, detect_backend, request_reboot
from provisioner.models import ErrorKind, Failed, InstallState, Ok

from conftest import FakeBackend


@pytest.fixture
def systemctl():
    with patch("provisioner.installer.run") as mock_run:
        yield mock_run


class TestHypervisorInstaller:
    def test_no_backend_fails(self):
        installer = HypervisorInstaller(backend=None)
        installer.backend = None
        result = installer.ensure_installed()
        assert isinstance(result, Failed)
        assert result.kind is ErrorKind.INSTALL

    def test_already_installed_is_noop(self, systemctl):
        backend = FakeBackend(installed=("qemu-kvm", "libvirt"))
        result = HypervisorInstaller(backend).ensure_installed()
        assert result == Ok(InstallState.INSTALLED)
        assert backend.install_calls == 0
        systemctl.assert_not_called()

    def test_pending_reported_without_reinstall(self, systemctl):
        backend = FakeBackend(installed=("qemu-kvm", "libvirt"))
        backend.pending = True
        result = HypervisorInstaller(backend).ensure_installed()
        assert result == Ok(InstallState.INSTALL_PENDING)
        assert backend.install_calls == 0

    def test_installs_missing_packages(self, systemctl):
        backend = FakeBackend(installed=("libvirt",))
        result = HypervisorInstaller(backend).ensure_installed()
        assert result == Ok(InstallState.INSTALLED)
        assert backend.installed == {"qemu-kvm", "libvirt"}
        systemctl.assert_called_once_with(["systemctl", "enable", "--now", "libvirtd"])

    def test_install_requiring_restart(self, systemctl):
        backend = FakeBackend(pending_after_install=True)
        result = HypervisorInstaller(backend).ensure_installed()
        assert result == Ok(InstallState.INSTALL_PENDING)

    def test_install_failure(self, systemctl):
        backend = FakeBackend()
        backend.install_error = subprocess.CalledProcessError(100, ["apt-get"])
        result = HypervisorInstaller(backend).ensure_installed()
        assert isinstance(result, Failed)
        assert result.kind is ErrorKind.INSTALL
        assert "package installation failed" in result.detail

    def test_service_failure_without_restart_fails(self, systemctl):
        systemctl.side_effect = subprocess.CalledProcessError(1, ["systemctl"])
        result = HypervisorInstaller(FakeBackend()).ensure_installed()
        assert isinstance(result, Failed)
        assert "could not enable libvirtd" in result.detail

    def test_service_failure_tolerated_when_restart_pending(self, systemctl):
        systemctl.side_effect = subprocess.CalledProcessError(1, ["systemctl"])
        backend = FakeBackend(pending_after_install=True)
        assert HypervisorInstaller(backend).ensure_installed() == Ok(InstallState.INSTALL_PENDING)

    def test_packages_still_missing_after_install(self, systemctl):
        backend = FakeBackend()
        backend.install = lambda packages: None
        result = HypervisorInstaller(backend).ensure_installed()
        assert isinstance(result, Failed)
        assert "still missing" in result.detail

    def test_second_call_after_install_is_noop(self, systemctl):
        backend = FakeBackend()
        installer = HypervisorInstaller(backend)
        installer.ensure_installed()
        installer.ensure_installed()
        assert backend.install_calls == 1

    def test_query_state(self):
        backend = FakeBackend()
        installer = HypervisorInstaller(backend)
        assert installer.query_state() is InstallState.NOT_INSTALLED
        backend.installed = {"qemu-kvm", "libvirt"}
        assert installer.query_state() is InstallState.INSTALLED
        backend.pending = True
        assert installer.query_state() is InstallState.INSTALL_PENDING


class TestAptBackend:
    def test_is_installed_parses_status(self):
        done = subprocess.CompletedProcess([], 0, stdout="install ok installed", stderr="")
        with patch("provisioner.installer.run", return_value=done):
            assert AptBackend().is_installed("qemu-utils") is True

    def test_not_installed(self):
        done = subprocess.CompletedProcess([], 1, stdout="", stderr="no packages found")
        with patch("provisioner.installer.run", return_value=done):
            assert AptBackend().is_installed("qemu-utils") is False

    def test_install_runs_noninteractive(self):
        with patch("provisioner.installer.run") as mock_run:
            AptBackend().install(["qemu-utils"])
        update, install = mock_run.call_args_list
        assert update.args[0][:2] == ["apt-get", "update"]
        assert install.args[0][-1] == "qemu-utils"
        assert install.kwargs["env"]["DEBIAN_FRONTEND"] == "noninteractive"

    def test_reboot_marker(self, tmp_path):
        marker = tmp_path / "reboot-required"
        with patch("provisioner.installer.REBOOT_REQUIRED_MARKER", marker):
            assert AptBackend().reboot_pending() is False
            marker.write_text("")
            assert AptBackend().reboot_pending() is True


class TestDnfBackend:
    def test_needs_restarting_exit_one(self):
        done = subprocess.CompletedProcess([], 1, stdout="", stderr="")
        with patch("provisioner.installer.shutil.which", return_value="/usr/bin/needs-restarting"), patch(
            "provisioner.installer.run", return_value=done
        ):
            assert DnfBackend().reboot_pending() is True

    def test_without_needs_restarting(self):
        with patch("provisioner.installer.shutil.which", return_value=None):
            assert DnfBackend().reboot_pending() is False


class TestDetectBackend:
    def test_prefers_apt(self):
        with patch("provisioner.installer.shutil.which", side_effect=lambda name: f"/usr/bin/{name}"):
            assert isinstance(detect_backend(), AptBackend)

    def test_dnf_when_no_apt(self):
        def which(name):
            return f"/usr/bin/{name}" if name in {"dnf", "rpm"} else None

        with patch("provisioner.installer.shutil.which", side_effect=which):
            assert isinstance(detect_backend(), DnfBackend)

    def test_none_found(self):
        with patch("provisioner.installer.shutil.which", return_value=None):
            assert detect_backend() is None


def test_request_reboot():
    with patch("provisioner.installer.run") as mock_run:
        request_reboot()
    mock_run.assert_called_once_with(["systemctl", "reboot"])
