"""Hypervisor role installation for hostvm-provisioner."""

from __future__ import annotations

import os
import shutil
import subprocess
from typing import List, Optional, Sequence

from provisioner.constants import REBOOT_REQUIRED_MARKER, ROLE_PACKAGES, ROLE_SERVICE
from provisioner.models import ErrorKind, Failed, InstallState, Ok, StageResult
from provisioner.utils import log, run


class PackageBackend:
    """Package manager operations needed to install the hypervisor role."""

    name = ""

    def __init__(self, packages: Optional[Sequence[str]] = None) -> None:
        self.packages = list(packages if packages is not None else ROLE_PACKAGES[self.name])

    def missing(self) -> List[str]:
        return [pkg for pkg in self.packages if not self.is_installed(pkg)]

    def is_installed(self, package: str) -> bool:
        raise NotImplementedError

    def install(self, packages: Sequence[str]) -> None:
        raise NotImplementedError

    def reboot_pending(self) -> bool:
        raise NotImplementedError


class AptBackend(PackageBackend):
    name = "apt"

    def is_installed(self, package: str) -> bool:
        result = run(
            ["dpkg-query", "-W", "-f=${Status}", package],
            check=False,
            capture_output=True,
        )
        return result.returncode == 0 and "install ok installed" in result.stdout

    def install(self, packages: Sequence[str]) -> None:
        env = dict(os.environ, DEBIAN_FRONTEND="noninteractive")
        run(["apt-get", "update", "-qq"], env=env)
        run(["apt-get", "install", "-y", "-qq", *packages], env=env)

    def reboot_pending(self) -> bool:
        return REBOOT_REQUIRED_MARKER.exists()


class DnfBackend(PackageBackend):
    name = "dnf"

    def is_installed(self, package: str) -> bool:
        result = run(["rpm", "-q", package], check=False, capture_output=True)
        return result.returncode == 0

    def install(self, packages: Sequence[str]) -> None:
        run(["dnf", "install", "-y", *packages])

    def reboot_pending(self) -> bool:
        if shutil.which("needs-restarting") is None:
            return False
        # needs-restarting -r exits 1 when a reboot is required
        result = run(["needs-restarting", "-r"], check=False, capture_output=True)
        return result.returncode == 1


def detect_backend() -> Optional[PackageBackend]:
    if shutil.which("apt-get") and shutil.which("dpkg-query"):
        return AptBackend()
    if shutil.which("dnf") and shutil.which("rpm"):
        return DnfBackend()
    return None


class HypervisorInstaller:
    def __init__(self, backend: Optional[PackageBackend] = None, service: str = ROLE_SERVICE) -> None:
        self.backend = backend if backend is not None else detect_backend()
        self.service = service

    def query_state(self) -> InstallState:
        if self.backend is None:
            return InstallState.NOT_INSTALLED
        if self.backend.missing():
            return InstallState.NOT_INSTALLED
        if self.backend.reboot_pending():
            return InstallState.INSTALL_PENDING
        return InstallState.INSTALLED

    def ensure_installed(self) -> StageResult:
        if self.backend is None:
            return Failed(ErrorKind.INSTALL, "no supported package manager found (apt or dnf)")

        state = self.query_state()
        if state is InstallState.INSTALLED:
            log("INFO", "Hypervisor role already installed")
            return Ok(InstallState.INSTALLED)
        if state is InstallState.INSTALL_PENDING:
            log("WARN", "Hypervisor role installed; host restart still pending")
            return Ok(InstallState.INSTALL_PENDING)

        missing = self.backend.missing()
        log("INFO", f"Installing hypervisor role via {self.backend.name}: {', '.join(missing)}")
        try:
            self.backend.install(missing)
        except (subprocess.CalledProcessError, OSError) as exc:
            return Failed(ErrorKind.INSTALL, f"package installation failed: {exc}")

        try:
            run(["systemctl", "enable", "--now", self.service])
        except (subprocess.CalledProcessError, OSError) as exc:
            if not self.backend.reboot_pending():
                return Failed(ErrorKind.INSTALL, f"could not enable {self.service}: {exc}")
            log("WARN", f"Could not enable {self.service} before restart: {exc}")

        state = self.query_state()
        if state is InstallState.NOT_INSTALLED:
            still_missing = ", ".join(self.backend.missing())
            return Failed(ErrorKind.INSTALL, f"packages still missing after install: {still_missing}")
        if state is InstallState.INSTALL_PENDING:
            log("WARN", "Hypervisor role installed; a host restart is required")
        else:
            log("SUCCESS", "Hypervisor role installed")
        return Ok(state)


def request_reboot() -> None:
    log("WARN", "Restarting host to activate the hypervisor role")
    run(["systemctl", "reboot"])
