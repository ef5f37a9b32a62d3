"""Request construction from CLI flags, environment and YAML config for hostvm-provisioner."""

from __future__ import annotations

import argparse
import re
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from provisioner.constants import (
    DEFAULT_DISK_SIZE,
    DEFAULT_DISK_STORE,
    DEFAULT_IMAGE_STORE,
    DEFAULT_IMAGE_VERSION,
    DEFAULT_MACHINE_NAME,
    DEFAULT_MEMORY,
    DEFAULT_VCPUS,
    DEFAULT_VM_STORE,
    KNOWN_IMAGES,
    MIN_MEMORY_BYTES,
)
from provisioner.exceptions import ProvisionerError
from provisioner.models import ImageDefinition, ProvisioningRequest
from provisioner.utils import get_env, parse_bool, parse_int, parse_size_to_bytes

MACHINE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,62}$")

# setting key -> environment variable
ENV_VARS = {
    "machine-name": "MACHINE_NAME",
    "vm-store-path": "VM_STORE_PATH",
    "disk-store-path": "DISK_STORE_PATH",
    "image-store-path": "IMAGE_STORE_PATH",
    "switch-name": "SWITCH_NAME",
    "memory-bytes": "MEMORY",
    "memory-min-bytes": "MEMORY_MIN",
    "memory-max-bytes": "MEMORY_MAX",
    "disk-size-bytes": "DISK_SIZE",
    "vcpu-count": "CPUS",
    "image-version": "IMAGE_VERSION",
    "force": "FORCE",
    "auto-start": "AUTO_START",
    "auto-restart-on-pending": "AUTO_RESTART_ON_PENDING",
}


def load_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ProvisionerError(f"Config file missing: {path}")
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ProvisionerError(f"Config file {path} contains invalid YAML: {exc}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ProvisionerError(f"Config file {path} must contain a mapping, got {type(data).__name__}")
    normalized = {str(key).replace("_", "-"): value for key, value in data.items()}
    unknown = sorted(set(normalized) - set(ENV_VARS))
    if unknown:
        raise ProvisionerError(f"Unknown keys in {path}: {', '.join(unknown)}")
    return normalized


def resolve_image(key: str) -> ImageDefinition:
    for image in KNOWN_IMAGES:
        if image.key == key:
            return image
    available = ", ".join(image.key for image in KNOWN_IMAGES)
    raise ProvisionerError(f"Unknown image version '{key}'. Available: {available}")


class _Settings:
    """Lookup in precedence order: CLI flag, environment, config file, default."""

    def __init__(self, args: argparse.Namespace, file_cfg: Dict[str, Any]) -> None:
        self.args = args
        self.file_cfg = file_cfg

    def get(self, key: str, default: Any = None) -> Any:
        cli_value = getattr(self.args, key.replace("-", "_"), None)
        if cli_value is not None:
            return cli_value
        env_value = get_env(ENV_VARS[key])
        if env_value is not None:
            return env_value
        if self.file_cfg.get(key) is not None:
            return self.file_cfg[key]
        return default


def build_request(args: argparse.Namespace) -> ProvisioningRequest:
    config_path = getattr(args, "config", None) or get_env("PROVISION_CONFIG")
    file_cfg = load_config_file(Path(config_path)) if config_path else {}
    settings = _Settings(args, file_cfg)

    machine_name = str(settings.get("machine-name", DEFAULT_MACHINE_NAME)).strip()
    if not MACHINE_NAME_RE.match(machine_name):
        raise ProvisionerError(
            f"Invalid machine name '{machine_name}'. Use letters, digits, '.', '_' or '-' (max 63 chars)"
        )

    switch_name = str(settings.get("switch-name", "") or "").strip() or None

    memory = parse_size_to_bytes("memory-bytes", settings.get("memory-bytes", DEFAULT_MEMORY))
    if memory < MIN_MEMORY_BYTES:
        raise ProvisionerError(f"memory-bytes must be at least {MIN_MEMORY_BYTES} (got {memory})")
    raw_min = settings.get("memory-min-bytes")
    memory_min = (
        parse_size_to_bytes("memory-min-bytes", raw_min) if raw_min is not None else max(MIN_MEMORY_BYTES, memory // 2)
    )
    raw_max = settings.get("memory-max-bytes")
    memory_max = parse_size_to_bytes("memory-max-bytes", raw_max) if raw_max is not None else memory
    if not memory_min <= memory <= memory_max:
        raise ProvisionerError(
            f"Memory range invalid: minimum {memory_min} <= startup {memory} <= maximum {memory_max} must hold"
        )

    return ProvisioningRequest(
        machine_name=machine_name,
        vm_store_path=Path(settings.get("vm-store-path", DEFAULT_VM_STORE)).expanduser(),
        disk_store_path=Path(settings.get("disk-store-path", DEFAULT_DISK_STORE)).expanduser(),
        image_store_path=Path(settings.get("image-store-path", DEFAULT_IMAGE_STORE)).expanduser(),
        switch_name=switch_name,
        memory_startup_bytes=memory,
        memory_min_bytes=memory_min,
        memory_max_bytes=memory_max,
        vcpu_count=parse_int("vcpu-count", settings.get("vcpu-count", DEFAULT_VCPUS), min_val=1, max_val=512),
        disk_size_bytes=parse_size_to_bytes("disk-size-bytes", settings.get("disk-size-bytes", DEFAULT_DISK_SIZE)),
        image=resolve_image(str(settings.get("image-version", DEFAULT_IMAGE_VERSION)).strip()),
        force_replace=parse_bool("force", settings.get("force", False)),
        auto_start=parse_bool("auto-start", settings.get("auto-start", True)),
        auto_restart_on_pending=parse_bool("auto-restart-on-pending", settings.get("auto-restart-on-pending", False)),
    )


def describe_request(request: ProvisioningRequest) -> Dict[str, Optional[str]]:
    """Flattened view of a request for display."""
    return {
        "machine-name": request.machine_name,
        "vm-store-path": str(request.vm_store_path),
        "disk-store-path": str(request.disk_store_path),
        "image-store-path": str(request.image_store_path),
        "switch-name": request.switch_name or "<auto>",
        "memory-bytes": str(request.memory_startup_bytes),
        "memory-min-bytes": str(request.memory_min_bytes),
        "memory-max-bytes": str(request.memory_max_bytes),
        "disk-size-bytes": str(request.disk_size_bytes),
        "vcpu-count": str(request.vcpu_count),
        "image-version": f"{request.image.key} ({request.image.label})",
        "force": str(request.force_replace).lower(),
        "auto-start": str(request.auto_start).lower(),
        "auto-restart-on-pending": str(request.auto_restart_on_pending).lower(),
    }
