"""Exceptions related to the release agent."""

from typing import Any

__all__ = [
    "AgentException",
    "InputException",
    "ReleaseNotFoundError",
    "ReleaseConflictError",
    "StoreException",
    "CommandException",
]


class AgentException(Exception):
    """Generic base exception used for this library."""


class InputException(AgentException):
    """Raised when values, templates or custom resources are not formatted as expected."""


class ReleaseNotFoundError(AgentException):
    """Raised when a release does not exist in the release store."""

    def __init__(self, release_name: str) -> None:
        super().__init__(f"release: {release_name!r} not found")
        self.release_name = release_name


class ReleaseConflictError(AgentException):
    """Raised when installing a release whose name is already taken."""

    def __init__(self, release_name: str) -> None:
        super().__init__(f"release {release_name} already exist")
        self.release_name = release_name


class StoreException(AgentException):
    """Raised on a transient failure talking to the release store or cluster."""


class ReleaseUpdateError(StoreException):
    """Raised by a release store when an update was only partially applied."""

    def __init__(self, message: str, release: Any | None = None) -> None:
        super().__init__(message)
        self.release = release


class ReleaseUpgradeError(StoreException):
    """Raised when an upgrade failed after the store recorded a new revision.

    The `release` attribute holds the partially upgraded release, if any, and
    callers are expected to inspect both.
    """

    def __init__(self, message: str, release: Any | None = None) -> None:
        super().__init__(message)
        self.release = release


class PartialFailureError(StoreException):
    """Raised when a failed mutation could not be cleaned up."""


class CommandException(AgentException):
    """Raised when there is a failure running a subcommand."""


class HelmException(CommandException):
    """Raised when there is a failure running a helm command."""


class KubeException(CommandException):
    """Raised when there is a failure talking to the cluster."""


class ChartException(AgentException):
    """Raised when a chart can't be fetched or loaded."""


class RenderException(AgentException):
    """Raised when chart templates can't be rendered or sorted."""


class LabelException(AgentException):
    """Raised when label injection fails for a manifest."""


class PacketException(AgentException):
    """Raised when a packet payload does not match its type."""


class ObjectNotFoundError(AgentException):
    """Raised when a custom resource is not found in the store."""


class ReconcileException(AgentException):
    """Raised when a reconciliation must be retried."""

