"""Exceptions related to flux-bootstrap."""

from typing import Any

__all__ = [
    "FluxBootstrapException",
    "ConfigurationException",
    "RenderException",
    "RepositoryException",
    "RetryableRepositoryException",
    "PushRejectedException",
    "SigningException",
    "ClusterException",
    "ReadinessTimeoutError",
    "TeardownException",
    "ImportException",
    "OperationTimeoutError",
    "CommandException",
]


class FluxBootstrapException(Exception):
    """Generic base exception used for this library."""

    def __init__(self, *args: object) -> None:
        super().__init__(*args)
        self.diagnostics: list[Any] = []
        """Warnings reported by the operation before it failed."""


class ConfigurationException(FluxBootstrapException):
    """Raised when the configuration is invalid or contradictory."""


class RenderException(FluxBootstrapException):
    """Raised when the repository manifests could not be generated."""


class CommandException(FluxBootstrapException):
    """Raised when there is a failure running a subcommand."""


class RepositoryException(FluxBootstrapException):
    """Raised when a git operation fails in a way that will not recover."""


class RetryableRepositoryException(RepositoryException):
    """Raised when a git push was rejected or the remote was unreachable."""


class PushRejectedException(RetryableRepositoryException):
    """Raised when the remote rejected a push because the branch moved."""


class SigningException(RepositoryException):
    """Raised when a commit could not be signed with the configured key."""


class ClusterException(FluxBootstrapException):
    """Raised when the cluster API rejects or fails a request."""


class ReadinessTimeoutError(ClusterException):
    """Raised when a resource did not become ready in time."""

    def __init__(self, resource_name: str, message: str | None) -> None:
        super().__init__(
            f"Timeout waiting for {resource_name} to become ready: "
            f"{message or 'Unknown status'}"
        )
        self.resource_name = resource_name
        self.message = message


class TeardownException(ClusterException):
    """Raised when one or more uninstall steps failed."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__(
            "Failed to uninstall Flux:\n" + "\n".join(f"- {e}" for e in errors)
        )
        self.errors = errors


class ImportException(FluxBootstrapException):
    """Raised when an existing installation can't be imported."""


class OperationTimeoutError(FluxBootstrapException):
    """Raised when an operation exceeded its time budget."""
