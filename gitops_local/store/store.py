"""Store module for holding state while reconciling Applications."""

from abc import ABC, abstractmethod
from collections.abc import Callable, AsyncGenerator
from enum import Enum
from typing import Any, TypeVar, TYPE_CHECKING

from gitops_local.manifest import Application, NamedResource
from gitops_local.status import ApplicationStatus, SyncHistoryEntry

from .artifact import Artifact

S = TypeVar("S", bound=Artifact)


class StoreEvent(str, Enum):
    """Enum for store events."""

    APPLICATION_ADDED = "application_added"
    APPLICATION_REMOVED = "application_removed"
    STATUS_UPDATED = "status_updated"
    ARTIFACT_UPDATED = "artifact_updated"
    HISTORY_ADDED = "history_added"


class Store(ABC):
    """Abstract base class for the central Application store with listener support."""

    @abstractmethod
    def add_application(self, app: Application) -> None:
        """Add or update an Application in the store."""

    @abstractmethod
    def remove_application(self, resource_id: NamedResource) -> None:
        """Remove an Application and everything recorded about it."""

    @abstractmethod
    def get_application(self, resource_id: NamedResource) -> Application | None:
        """Retrieve an Application by resource identity."""

    @abstractmethod
    def find_application(self, name: str, namespace: str | None = None) -> Application:
        """Retrieve an Application by name, raising ApplicationNotFound if missing."""

    @abstractmethod
    def list_applications(self) -> list[Application]:
        """List all Applications in the store."""

    @abstractmethod
    def update_status(
        self, resource_id: NamedResource, status: ApplicationStatus
    ) -> ApplicationStatus:
        """Replace the status record of an Application.

        The store assigns the next version to the record and returns the
        record as stored.
        """

    @abstractmethod
    def get_status(self, resource_id: NamedResource) -> ApplicationStatus | None:
        """Retrieve the latest status record of an Application."""

    @abstractmethod
    def set_artifact(self, resource_id: NamedResource, artifact: S) -> None:
        """Store an artifact (e.g. the last synced desired state) for an Application."""

    @abstractmethod
    def get_artifact(self, resource_id: NamedResource, cls: type[S]) -> S | None:
        """Retrieve an artifact of the given type for an Application."""

    @abstractmethod
    def clear_artifact(self, resource_id: NamedResource, cls: type[Artifact]) -> None:
        """Drop any artifact of the given type (or a subclass) for an Application."""

    @abstractmethod
    def add_history(
        self, resource_id: NamedResource, entry: SyncHistoryEntry, limit: int
    ) -> None:
        """Append a sync history entry, keeping at most limit entries."""

    @abstractmethod
    def get_history(self, resource_id: NamedResource) -> list[SyncHistoryEntry]:
        """Return the sync history of an Application, oldest first."""

    @abstractmethod
    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[NamedResource, Any], None],
        flush: bool = False,
    ) -> Callable[[], None]:
        """Register a callback for a specific event.

        When flush is set, the callback is invoked immediately for the values
        already in the store. Returns a callable that removes the listener.
        """

    @abstractmethod
    async def watch_added(self) -> AsyncGenerator[tuple[NamedResource, Application]]:
        """
        Watch for Applications being added or updated.

        This is an asynchronous iterator that first yields the Applications
        already in the store then each one added afterwards.
        """
        if TYPE_CHECKING:
            yield None, None  # type: ignore[misc]

    @abstractmethod
    async def watch_status(
        self,
        resource_id: NamedResource,
        predicate: Callable[[ApplicationStatus], bool],
    ) -> ApplicationStatus:
        """
        Wait for the status of an Application to satisfy a predicate.

        Returns immediately if the current status already does. The caller is
        expected to handle timeouts.
        """
