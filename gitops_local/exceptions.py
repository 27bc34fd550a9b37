"""Exceptions related to gitops-local."""

__all__ = [
    "GitOpsException",
    "FetchError",
    "ValidationError",
    "ApplyError",
    "DriftError",
    "InvalidTransition",
    "ApplicationNotFound",
    "CommandException",
    "KustomizeException",
]


class GitOpsException(Exception):
    """Generic base exception used for this library."""


class FetchError(GitOpsException):
    """Raised when the desired state source is unreachable or cannot be read.

    A fetch error never ends the lifecycle of an Application, the fetch is
    retried with backoff on a later pass.
    """


class ValidationError(GitOpsException):
    """Raised when desired state documents are not formatted as expected."""


class CommandException(GitOpsException):
    """Raised when there is a failure running a subcommand."""


class KustomizeException(CommandException):
    """Raised when there is a failure running a kustomize command."""


class ApplyError(GitOpsException):
    """Raised when a cluster API call for a single resource fails."""

    def __init__(
        self, resource_name: str, message: str | None, *, transient: bool = True
    ) -> None:
        super().__init__(f"Resource {resource_name} failed: {message or 'Unknown error'}")
        self.resource_name = resource_name
        self.message = message
        self.transient = transient


class DriftError(GitOpsException):
    """Raised when live state diverges from the last synced desired state."""

    def __init__(self, resource_names: list[str]) -> None:
        super().__init__(f"Live state drifted from last sync: {', '.join(resource_names)}")
        self.resource_names = resource_names


class InvalidTransition(GitOpsException):
    """Raised when the reconciler attempts a phase change the state machine forbids."""


class ApplicationNotFound(GitOpsException):
    """Raised when an Application is not found in the store or on disk."""
