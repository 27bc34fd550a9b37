"""Interface to the control plane of the destination cluster."""

from abc import ABC, abstractmethod
from typing import Any

from gitops_local.manifest import NamedResource

__all__ = ["Cluster"]


class Cluster(ABC):
    """Reads live state and applies changes to a cluster.

    Every method raises ApplyError on failure, with `transient` set when the
    call may succeed if retried.
    """

    @abstractmethod
    async def get(self, resource_id: NamedResource) -> dict[str, Any] | None:
        """Return the live object, or None when it does not exist."""

    @abstractmethod
    async def list_managed(
        self, label: str, value: str, kinds: set[str]
    ) -> list[dict[str, Any]]:
        """Return live objects of the given kinds carrying the label value."""

    @abstractmethod
    async def apply(self, doc: dict[str, Any]) -> dict[str, Any]:
        """Create or update an object, returning the live object."""

    @abstractmethod
    async def delete(self, resource_id: NamedResource) -> None:
        """Delete an object. Deleting an object that does not exist succeeds."""
