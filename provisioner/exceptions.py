"""Custom exceptions for hostvm-provisioner."""


class ProvisionerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class HostError(ProvisionerError):
    """Raised when the host platform rejects an operation."""


class TransportError(ProvisionerError):
    """Raised by an image transport when a transfer cannot complete."""
