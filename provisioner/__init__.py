"""hostvm-provisioner package."""

__all__ = [
    "capability",
    "cli",
    "config",
    "constants",
    "exceptions",
    "host",
    "images",
    "installer",
    "machine",
    "models",
    "network",
    "orchestrator",
    "storage",
    "utils",
]
