"""Module for in memory Application store."""

import asyncio
from collections import defaultdict
from collections.abc import Callable, AsyncGenerator
import dataclasses
from typing import Any, TypeVar, DefaultDict

import logging

from gitops_local.manifest import Application, NamedResource
from gitops_local.exceptions import ApplicationNotFound
from gitops_local.status import ApplicationStatus, SyncHistoryEntry

from .artifact import Artifact
from .store import Store, StoreEvent


_LOGGER = logging.getLogger(__name__)

S = TypeVar("S", bound=Artifact)


class InMemoryStore(Store):
    """In-memory implementation of the Store interface.

    Stores Applications, status records, history and artifacts keyed by the
    NamedResource of the Application. Supports event listeners for changes.
    """

    def __init__(self) -> None:
        """Initialize the InMemoryStore."""
        self._applications: dict[NamedResource, Application] = {}
        self._status: dict[NamedResource, ApplicationStatus] = {}
        self._versions: DefaultDict[NamedResource, int] = defaultdict(int)
        self._artifacts: DefaultDict[NamedResource, dict[type[Artifact], Artifact]] = (
            defaultdict(dict)
        )
        self._history: DefaultDict[NamedResource, list[SyncHistoryEntry]] = (
            defaultdict(list)
        )
        self._listeners: DefaultDict[StoreEvent, list[Callable[..., None]]] = (
            defaultdict(list)
        )

    def add_application(self, app: Application) -> None:
        """Add or update an Application in the store."""
        resource_id = app.resource_id
        if (existing := self._applications.get(resource_id)) is not None:
            if dataclasses.asdict(existing) == dataclasses.asdict(app):
                _LOGGER.debug("Application %s unchanged, skipping", resource_id)
                return
            _LOGGER.debug("Updating existing Application %s in store", resource_id)
        else:
            _LOGGER.debug("Adding Application %s to store", resource_id)
        self._applications[resource_id] = app
        self._fire_event(StoreEvent.APPLICATION_ADDED, resource_id, app)

    def remove_application(self, resource_id: NamedResource) -> None:
        """Remove an Application and everything recorded about it."""
        if (app := self._applications.pop(resource_id, None)) is None:
            return
        _LOGGER.debug("Removing Application %s from store", resource_id)
        self._status.pop(resource_id, None)
        self._artifacts.pop(resource_id, None)
        self._history.pop(resource_id, None)
        self._fire_event(StoreEvent.APPLICATION_REMOVED, resource_id, app)

    def get_application(self, resource_id: NamedResource) -> Application | None:
        """Retrieve an Application by resource identity."""
        return self._applications.get(resource_id)

    def find_application(self, name: str, namespace: str | None = None) -> Application:
        """Retrieve an Application by name, raising ApplicationNotFound if missing."""
        found = [
            app
            for app in self._applications.values()
            if app.name == name and (namespace is None or app.namespace == namespace)
        ]
        if not found:
            raise ApplicationNotFound(f"Application '{name}' not found")
        if len(found) > 1:
            names = [app.namespaced_name for app in found]
            raise ApplicationNotFound(
                f"Application '{name}' is ambiguous, specify a namespace: {names}"
            )
        return found[0]

    def list_applications(self) -> list[Application]:
        """List all Applications in the store."""
        return list(self._applications.values())

    def update_status(
        self, resource_id: NamedResource, status: ApplicationStatus
    ) -> ApplicationStatus:
        """Replace the status record of an Application with the next version."""
        self._versions[resource_id] = max(self._versions[resource_id], status.version) + 1
        record = dataclasses.replace(status, version=self._versions[resource_id])
        _LOGGER.debug(
            "Updating status for Application %s to %s (version %d)",
            resource_id.namespaced_name,
            record,
            record.version,
        )
        self._status[resource_id] = record
        self._fire_event(StoreEvent.STATUS_UPDATED, resource_id, record)
        return record

    def get_status(self, resource_id: NamedResource) -> ApplicationStatus | None:
        """Retrieve the latest status record of an Application."""
        return self._status.get(resource_id)

    def set_artifact(self, resource_id: NamedResource, artifact: S) -> None:
        """Store an artifact for an Application, one per artifact type."""
        if not isinstance(artifact, Artifact):
            raise ValueError(
                f"Artifact/set {resource_id.namespaced_name} is not of type {Artifact.__name__} (was {artifact.__class__.__name__})"
            )
        self._artifacts[resource_id][type(artifact)] = artifact
        self._fire_event(StoreEvent.ARTIFACT_UPDATED, resource_id, artifact)

    def get_artifact(self, resource_id: NamedResource, cls: type[S]) -> S | None:
        """Retrieve an artifact of the given type for an Application."""
        for artifact in self._artifacts.get(resource_id, {}).values():
            if isinstance(artifact, cls):
                return artifact
        return None

    def clear_artifact(self, resource_id: NamedResource, cls: type[Artifact]) -> None:
        """Drop artifacts of the given type for an Application."""
        artifacts = self._artifacts.get(resource_id, {})
        for artifact_cls in [c for c in artifacts if issubclass(c, cls)]:
            del artifacts[artifact_cls]

    def add_history(
        self, resource_id: NamedResource, entry: SyncHistoryEntry, limit: int
    ) -> None:
        """Append a sync history entry, keeping at most limit entries."""
        history = self._history[resource_id]
        history.append(entry)
        if limit > 0:
            del history[:-limit]
        self._fire_event(StoreEvent.HISTORY_ADDED, resource_id, entry)

    def get_history(self, resource_id: NamedResource) -> list[SyncHistoryEntry]:
        """Return the sync history of an Application, oldest first."""
        return list(self._history.get(resource_id, []))

    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[NamedResource, Any], None],
        flush: bool = False,
    ) -> Callable[[], None]:
        """Register a callback for a specific event."""

        def remove() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        self._listeners[event].append(callback)

        if flush:
            _LOGGER.debug("Flushing values for event type %s", event)
            for rid, app in list(self._applications.items()):
                if event == StoreEvent.APPLICATION_ADDED:
                    callback(rid, app)
                elif event == StoreEvent.STATUS_UPDATED:
                    if status := self._status.get(rid):
                        callback(rid, status)
                elif event == StoreEvent.ARTIFACT_UPDATED:
                    for artifact in list(self._artifacts.get(rid, {}).values()):
                        callback(rid, artifact)
                elif event == StoreEvent.HISTORY_ADDED:
                    for entry in self.get_history(rid):
                        callback(rid, entry)

        return remove

    def _fire_event(self, event: StoreEvent, *args: Any) -> None:
        for cb in list(self._listeners[event]):  # Iterate over a copy for safe removal
            try:
                cb(*args)
            except Exception:
                _LOGGER.exception("Store listener callback failed for event %s", event)

    async def watch_added(self) -> AsyncGenerator[tuple[NamedResource, Application]]:
        """
        Watch for Applications being added or updated.

        This first yields any Application already in the store and then each
        one added or updated afterwards.
        """
        queue: asyncio.Queue[tuple[NamedResource, Application]] = asyncio.Queue()

        def callback(resource_id: NamedResource, app: Application) -> None:
            queue.put_nowait((resource_id, app))

        remove_listener = self.add_listener(
            StoreEvent.APPLICATION_ADDED, callback, flush=True
        )
        try:
            while True:
                resource_id, app = await queue.get()
                yield resource_id, app
                queue.task_done()
        except asyncio.CancelledError:
            _LOGGER.debug("watch_added cancelled.")
            raise
        finally:
            _LOGGER.debug("Cleaning up listener for watch_added")
            remove_listener()

    async def watch_status(
        self,
        resource_id: NamedResource,
        predicate: Callable[[ApplicationStatus], bool],
    ) -> ApplicationStatus:
        """Wait for the status of an Application to satisfy a predicate."""
        if (current := self.get_status(resource_id)) is not None and predicate(current):
            return current

        future: asyncio.Future[ApplicationStatus] = (
            asyncio.get_running_loop().create_future()
        )

        def callback(fired_resource_id: NamedResource, status: ApplicationStatus) -> None:
            if fired_resource_id == resource_id and not future.done() and predicate(status):
                future.set_result(status)

        remove_listener = self.add_listener(StoreEvent.STATUS_UPDATED, callback)
        try:
            return await future
        except asyncio.CancelledError:
            _LOGGER.debug("watch_status for %s cancelled.", resource_id)
            raise
        finally:
            remove_listener()
