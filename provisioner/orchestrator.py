"""Stage sequencing for hostvm-provisioner.

The pipeline holds no state between invocations. Every run re-derives where
the host stands: an already-installed role short-circuits, existing
directories and networks are reused, a cached image is kept. That is what makes
a run after the reboot halt pick up where the previous one stopped.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from provisioner.capability import CapabilityProbe
from provisioner.constants import EXIT_FAILED, EXIT_OK, EXIT_PRECONDITION, EXIT_REBOOT_PENDING
from provisioner.exceptions import ProvisionerError
from provisioner.images import ImageAcquirer
from provisioner.installer import HypervisorInstaller, request_reboot
from provisioner.machine import GuestMachineBuilder
from provisioner.models import (
    ErrorKind,
    Failed,
    InstallState,
    MachineRecord,
    Ok,
    ProvisioningRequest,
    Skipped,
    StageResult,
    SwitchDescriptor,
)
from provisioner.network import NetworkAttachmentSelector
from provisioner.storage import ResourceProvisioner
from provisioner.utils import log


class PipelineState(str, Enum):
    START = "start"
    CAPABILITY_CHECKED = "capability-checked"
    ROLE_ENSURED = "role-ensured"
    HALTED_REBOOT_PENDING = "halted-reboot-pending"
    RESOURCES_READY = "resources-ready"
    SWITCH_SELECTED = "switch-selected"
    IMAGE_READY = "image-ready"
    MACHINE_BUILT = "machine-built"
    STARTED = "started"
    DONE = "done"
    FAILED = "failed"
    PRECONDITION_FAILED = "precondition-failed"


@dataclass
class PipelineOutcome:
    state: PipelineState
    exit_code: int
    history: List[PipelineState] = field(default_factory=list)
    stage: Optional[str] = None
    error: Optional[Failed] = None
    switch: Optional[SwitchDescriptor] = None
    record: Optional[MachineRecord] = None


def connect_libvirt_host():
    # The bindings ship with the hypervisor role, so they are imported only once it is ensured.
    from provisioner.host import LibvirtHost

    host = LibvirtHost()
    host.connect()
    return host


class ProvisioningOrchestrator:
    def __init__(
        self,
        request: ProvisioningRequest,
        probe: Optional[CapabilityProbe] = None,
        installer: Optional[HypervisorInstaller] = None,
        resources: Optional[ResourceProvisioner] = None,
        acquirer: Optional[ImageAcquirer] = None,
        host_factory: Callable[[], object] = connect_libvirt_host,
        selector_factory: Callable[..., NetworkAttachmentSelector] = NetworkAttachmentSelector,
        builder_factory: Callable[..., GuestMachineBuilder] = GuestMachineBuilder,
        reboot: Callable[[], None] = request_reboot,
    ) -> None:
        self.request = request
        self.probe = probe if probe is not None else CapabilityProbe()
        self.installer = installer if installer is not None else HypervisorInstaller()
        self.resources = resources if resources is not None else ResourceProvisioner()
        self.acquirer = acquirer if acquirer is not None else ImageAcquirer()
        self.host_factory = host_factory
        self.selector_factory = selector_factory
        self.builder_factory = builder_factory
        self.reboot = reboot
        self.history: List[PipelineState] = []

    def _advance(self, state: PipelineState) -> None:
        self.history.append(state)
        log("DEBUG", f"Pipeline state: {state.value}")

    def _fail(self, stage: str, failure: Failed, **extra) -> PipelineOutcome:
        self._advance(PipelineState.FAILED)
        log("ERROR", f"Stage '{stage}' failed: {failure.describe()}")
        return PipelineOutcome(
            PipelineState.FAILED, EXIT_FAILED, list(self.history), stage=stage, error=failure, **extra
        )

    def _precondition(self, detail: str) -> PipelineOutcome:
        self._advance(PipelineState.PRECONDITION_FAILED)
        failure = Failed(ErrorKind.PREREQUISITE, detail)
        log("ERROR", f"Precondition failed: {detail}")
        return PipelineOutcome(
            PipelineState.PRECONDITION_FAILED,
            EXIT_PRECONDITION,
            list(self.history),
            stage="capability",
            error=failure,
        )

    def run(self) -> PipelineOutcome:
        self.history = []
        self._advance(PipelineState.START)
        req = self.request

        report = self.probe.probe()
        if not report.privileged:
            return self._precondition("administrative privileges are required (run as root)")
        if report.virtualization_supported is False:
            return self._precondition(f"hardware virtualization is not supported: {report.detail}")
        if report.virtualization_supported is None:
            log("WARN", f"Could not confirm virtualization support ({report.detail}); continuing")
        else:
            log("INFO", f"Hardware virtualization available ({report.detail})")
        self._advance(PipelineState.CAPABILITY_CHECKED)

        installed = self.installer.ensure_installed()
        if isinstance(installed, Failed):
            return self._fail("hypervisor", installed)
        self._advance(PipelineState.ROLE_ENSURED)
        if isinstance(installed, Ok) and installed.value is InstallState.INSTALL_PENDING:
            self._advance(PipelineState.HALTED_REBOOT_PENDING)
            log("WARN", "Host restart required; re-run the provisioner after the restart to continue")
            if req.auto_restart_on_pending:
                self.reboot()
            return PipelineOutcome(PipelineState.HALTED_REBOOT_PENDING, EXIT_REBOOT_PENDING, list(self.history))

        storage = self.resources.ensure_directories(req.labeled_paths())
        if isinstance(storage, Failed):
            return self._fail("storage", storage)
        self._advance(PipelineState.RESOURCES_READY)

        try:
            host = self.host_factory()
        except ProvisionerError as exc:
            return self._fail(
                "connect", Failed(ErrorKind.INSTALL, f"hypervisor role present but unreachable: {exc}")
            )
        try:
            return self._run_host_stages(host, report.virtualization_supported is True)
        finally:
            close = getattr(host, "close", None)
            if close is not None:
                close()

    def _run_host_stages(self, host, hardware_accelerated: bool) -> PipelineOutcome:
        req = self.request

        selected = self.selector_factory(host).select(req.switch_name)
        if isinstance(selected, Failed):
            return self._fail("network", selected)
        switch = selected.value
        self._advance(PipelineState.SWITCH_SELECTED)

        descriptor = req.image_descriptor()
        image = self.acquirer.acquire(descriptor)
        if isinstance(image, Failed):
            return self._fail("image", image, switch=switch)
        self._advance(PipelineState.IMAGE_READY)

        domain_type = "kvm" if hardware_accelerated else "qemu"
        builder = self.builder_factory(host, domain_type=domain_type)
        spec = req.machine_spec(descriptor, switch)
        built = builder.build(spec, force_replace=req.force_replace)
        if isinstance(built, Failed):
            return self._fail("machine", built, switch=switch)
        record = built.value
        self._advance(PipelineState.MACHINE_BUILT)

        started = self._start(builder)
        if isinstance(started, Failed):
            return self._fail("start", started, switch=switch, record=record)
        if isinstance(started, Skipped):
            log("INFO", f"Not starting machine: {started.reason}")
        else:
            self._advance(PipelineState.STARTED)

        self._advance(PipelineState.DONE)
        return PipelineOutcome(PipelineState.DONE, EXIT_OK, list(self.history), switch=switch, record=record)

    def _start(self, builder: GuestMachineBuilder) -> StageResult:
        if not self.request.auto_start:
            return Skipped("auto-start disabled")
        return builder.start(self.request.machine_name)
