"""Storage location provisioning for hostvm-provisioner."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Mapping

from provisioner.models import ErrorKind, Failed, Ok, StageResult
from provisioner.utils import ensure_directory, log


class ResourceProvisioner:
    def ensure_directories(self, paths: Mapping[str, Path]) -> StageResult:
        """Create missing directories; existing ones are left untouched.

        Stops at the first failure. Directories created before the failure stay
        on disk since a later run simply finds them present.
        """
        outcome: Dict[str, str] = {}
        for label, path in paths.items():
            if path.is_dir():
                log("INFO", f"Using existing {label} directory {path}")
                outcome[label] = "existing"
                continue
            if path.exists():
                return Failed(ErrorKind.STORAGE, f"{path} exists and is not a directory", step=label)
            try:
                ensure_directory(path)
            except OSError as exc:
                return Failed(ErrorKind.STORAGE, f"{path}: {exc.strerror or exc}", step=label)
            log("SUCCESS", f"Created {label} directory {path}")
            outcome[label] = "created"
        return Ok(outcome)
