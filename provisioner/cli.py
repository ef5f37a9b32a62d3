"""CLI entry points for hostvm-provisioner."""

from __future__ import annotations

import argparse
import traceback
from typing import List, Optional

from provisioner.capability import CapabilityProbe
from provisioner.config import build_request, describe_request
from provisioner.constants import EXIT_FAILED, EXIT_OK, KNOWN_IMAGES
from provisioner.exceptions import ProvisionerError
from provisioner.installer import HypervisorInstaller
from provisioner.models import ProvisioningRequest
from provisioner.orchestrator import PipelineOutcome, PipelineState, ProvisioningOrchestrator
from provisioner.utils import format_size, log


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hostvm-provision",
        description="Provision a KVM/libvirt host and deploy a guest machine onto it",
    )
    parser.add_argument("--machine-name", help="Name of the guest machine")
    parser.add_argument("--vm-store-path", help="Directory for machine metadata")
    parser.add_argument("--disk-store-path", help="Directory for guest disk images")
    parser.add_argument("--image-store-path", help="Directory for cached boot images")
    parser.add_argument("--switch-name", help="Preferred virtual network (empty = auto-detect)")
    parser.add_argument("--memory-bytes", help="Startup memory, e.g. 4294967296 or 4G")
    parser.add_argument("--memory-min-bytes", help="Minimum memory (default: half of startup, at least 512M)")
    parser.add_argument("--memory-max-bytes", help="Maximum memory (default: startup memory)")
    parser.add_argument("--disk-size-bytes", help="System disk size, e.g. 40G")
    parser.add_argument("--vcpu-count", help="Number of virtual CPUs")
    parser.add_argument(
        "--image-version",
        help=f"Boot image to install from ({', '.join(image.key for image in KNOWN_IMAGES)})",
    )
    parser.add_argument("--force", action="store_true", default=None, help="Replace an existing machine")
    parser.add_argument(
        "--auto-start",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Start the machine once built (default: on)",
    )
    parser.add_argument(
        "--auto-restart-on-pending",
        action="store_true",
        default=None,
        help="Restart the host automatically when the hypervisor role needs it",
    )
    parser.add_argument("--config", help="YAML file with default settings")
    parser.add_argument("--list-images", action="store_true", help="List known boot images and exit")
    parser.add_argument("--show-config", action="store_true", help="Show the resolved request and exit")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Inspect host capability and install state without changing anything",
    )
    return parser


def list_images() -> None:
    max_key = max(len(image.key) for image in KNOWN_IMAGES)
    for image in KNOWN_IMAGES:
        print(f"  {image.key:<{max_key}}  {image.label}  (min size {format_size(image.minimum_size_bytes)})")


def show_config(request: ProvisioningRequest) -> None:
    for key, value in describe_request(request).items():
        print(f"  {key}: {value}")


def dry_run(request: ProvisioningRequest) -> int:
    log("INFO", "=== Configuration ===")
    show_config(request)
    log("INFO", "=== Host Checks ===")
    report = CapabilityProbe().probe()
    if report.virtualization_supported:
        log("SUCCESS", f"Virtualization: available ({report.detail})")
    elif report.virtualization_supported is None:
        log("WARN", f"Virtualization: unknown ({report.detail})")
    else:
        log("ERROR", f"Virtualization: NOT available ({report.detail})")
    if report.privileged:
        log("SUCCESS", "Privileges:     administrative")
    else:
        log("ERROR", "Privileges:     insufficient (run as root)")
    log("INFO", f"Hypervisor:     {HypervisorInstaller().query_state().value}")
    descriptor = request.image_descriptor()
    if descriptor.is_valid():
        log("INFO", f"Boot image:     {descriptor.local_path} (cached)")
    else:
        log("INFO", f"Boot image:     {descriptor.source_url} (will download)")
    log("INFO", "=== Dry-run complete (nothing changed) ===")
    return EXIT_OK


def print_summary(request: ProvisioningRequest, outcome: PipelineOutcome) -> None:
    """Print a visually distinct summary after a successful run."""
    record = outcome.record
    lines: List[str] = [f"  Machine: {request.machine_name}"]
    if record is not None:
        lines.append(
            f"  vCPUs: {record.vcpu_count} | Memory: {format_size(record.memory_startup_bytes)} "
            f"(max {format_size(record.memory_max_bytes)})"
        )
        if record.boot_media_path:
            lines.append(f"  Boot media: {record.boot_media_path}")
        lines.append(f"  Boot order: {', '.join(record.boot_order)}")
    if outcome.switch is not None:
        lines.append(f"  Network: {outcome.switch.name} ({outcome.switch.kind.value})")
    state = "running" if PipelineState.STARTED in outcome.history else "defined (not started)"
    lines.append(f"  State: {state}")
    lines.append(f"  Console: virsh console {request.machine_name}")

    max_len = max(len(line) for line in lines)
    border_len = max_len + 2
    banner_colour = "\033[0;36m"
    reset = "\033[0m"
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)
    for line in lines:
        print(f"{banner_colour}{line}{reset}", flush=True)
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.list_images:
        list_images()
        return EXIT_OK

    try:
        request = build_request(args)
    except ProvisionerError as exc:
        log("ERROR", str(exc))
        return EXIT_FAILED

    if args.show_config:
        show_config(request)
        return EXIT_OK
    if args.dry_run:
        return dry_run(request)

    log(
        "INFO",
        f"Provisioning '{request.machine_name}' | Memory: {format_size(request.memory_startup_bytes)} | "
        f"vCPUs: {request.vcpu_count} | Disk: {format_size(request.disk_size_bytes)} | Image: {request.image.key}",
    )
    try:
        outcome = ProvisioningOrchestrator(request).run()
    except KeyboardInterrupt:
        log("WARN", "Interrupted; re-run to continue from the current host state")
        return EXIT_FAILED
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        traceback.print_exc()
        return EXIT_FAILED

    if outcome.state is PipelineState.DONE:
        print_summary(request, outcome)
    elif outcome.error is not None:
        log("ERROR", f"Provisioning stopped in stage '{outcome.stage}' ({outcome.error.kind.value})")
    return outcome.exit_code
