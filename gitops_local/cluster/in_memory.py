"""Module for an in memory cluster.

The in memory cluster keeps objects in a dictionary and plays the part of
the API server and the workload controllers: it assigns server side metadata
and, unless disabled, writes a status for workloads as if they had rolled
out. It also records every mutating call so callers can reason about what a
sync actually did.
"""

import asyncio
import copy
from dataclasses import dataclass
import logging
from typing import Any
import uuid

from gitops_local.exceptions import ApplyError
from gitops_local.manifest import NAMESPACE_KIND, NamedResource, is_namespaced

from .cluster import Cluster

__all__ = ["InMemoryCluster", "Mutation"]

_LOGGER = logging.getLogger(__name__)

SERVER_METADATA = ("uid", "creationTimestamp", "resourceVersion", "generation")


@dataclass(frozen=True)
class Mutation:
    """A mutating call issued against the cluster."""

    action: str
    resource_id: NamedResource


@dataclass
class _Failure:
    action: str
    remaining: int | None
    transient: bool
    message: str


def _deep_merge(base: dict[str, Any], patch: dict[str, Any]) -> None:
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        elif value is None:
            base.pop(key, None)
        else:
            base[key] = copy.deepcopy(value)


def _simulated_status(obj: dict[str, Any]) -> dict[str, Any] | None:
    """Return the status a controller would write once the object rolled out."""
    kind = obj["kind"]
    spec = obj.get("spec") or {}
    generation = obj["metadata"].get("generation", 1)
    replicas = spec.get("replicas", 1)
    if kind in ("Deployment", "ReplicaSet"):
        return {
            "observedGeneration": generation,
            "replicas": replicas,
            "updatedReplicas": replicas,
            "readyReplicas": replicas,
            "availableReplicas": replicas,
        }
    if kind == "StatefulSet":
        return {
            "observedGeneration": generation,
            "replicas": replicas,
            "readyReplicas": replicas,
            "currentRevision": f"rev-{generation}",
            "updateRevision": f"rev-{generation}",
        }
    if kind == "DaemonSet":
        return {
            "observedGeneration": generation,
            "desiredNumberScheduled": 1,
            "updatedNumberScheduled": 1,
            "numberAvailable": 1,
        }
    if kind == "Job":
        return {"conditions": [{"type": "Complete", "status": "True"}]}
    if kind == "PersistentVolumeClaim":
        return {"phase": "Bound"}
    if kind == "Pod":
        return {
            "phase": "Running",
            "containerStatuses": [
                {"name": c.get("name"), "ready": True}
                for c in spec.get("containers") or ()
            ],
        }
    if kind in ("Service", "Ingress"):
        return {"loadBalancer": {"ingress": [{"ip": "10.0.0.1"}]}}
    if kind == NAMESPACE_KIND:
        return {"phase": "Active"}
    return None


class InMemoryCluster(Cluster):
    """A cluster that holds live objects in memory."""

    def __init__(self, simulate_status: bool = True, latency: float = 0.0) -> None:
        """Initialize the InMemoryCluster.

        Args:
            simulate_status: Write workload status on every change as if the
                workload had rolled out.
            latency: Seconds each call takes, to exercise timeouts.
        """
        self._objects: dict[NamedResource, dict[str, Any]] = {}
        self._failures: dict[NamedResource, list[_Failure]] = {}
        self._simulate_status = simulate_status
        self._resource_version = 0
        self.latency = latency
        self.mutations: list[Mutation] = []
        self.attempts: dict[tuple[str, NamedResource], int] = {}

    def fail(
        self,
        resource_id: NamedResource,
        action: str = "apply",
        times: int | None = None,
        transient: bool = True,
        message: str = "injected failure",
    ) -> None:
        """Make calls for a resource fail, `times` times or forever when None."""
        self._failures.setdefault(resource_id, []).append(
            _Failure(action, times, transient, message)
        )

    def _check_failure(self, action: str, resource_id: NamedResource) -> None:
        key = (action, resource_id)
        self.attempts[key] = self.attempts.get(key, 0) + 1
        for failure in self._failures.get(resource_id, []):
            if failure.action != action:
                continue
            if failure.remaining is not None:
                if failure.remaining <= 0:
                    continue
                failure.remaining -= 1
            raise ApplyError(str(resource_id), failure.message, transient=failure.transient)

    async def _delay(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
        else:
            await asyncio.sleep(0)

    def _next_version(self) -> str:
        self._resource_version += 1
        return str(self._resource_version)

    def _store(self, resource_id: NamedResource, doc: dict[str, Any]) -> dict[str, Any]:
        """Write an object, maintaining server side metadata."""
        obj = copy.deepcopy(doc)
        metadata = obj.setdefault("metadata", {})
        existing = self._objects.get(resource_id)
        if existing is None:
            metadata["uid"] = str(uuid.uuid4())
            metadata["creationTimestamp"] = "2024-01-01T00:00:00Z"
            metadata["generation"] = 1
        else:
            for key in SERVER_METADATA:
                if key in existing["metadata"]:
                    metadata[key] = existing["metadata"][key]
            if existing.get("spec") != obj.get("spec"):
                metadata["generation"] = existing["metadata"].get("generation", 1) + 1
            if "status" in existing and "status" not in obj:
                obj["status"] = existing["status"]
        metadata["resourceVersion"] = self._next_version()
        if self._simulate_status and (status := _simulated_status(obj)) is not None:
            obj["status"] = status
        self._objects[resource_id] = obj
        return obj

    async def get(self, resource_id: NamedResource) -> dict[str, Any] | None:
        """Return the live object, or None when it does not exist."""
        await self._delay()
        self._check_failure("get", resource_id)
        obj = self._objects.get(resource_id)
        return copy.deepcopy(obj) if obj is not None else None

    async def list_managed(
        self, label: str, value: str, kinds: set[str]
    ) -> list[dict[str, Any]]:
        """Return live objects of the given kinds carrying the label value."""
        await self._delay()
        return [
            copy.deepcopy(obj)
            for rid, obj in sorted(self._objects.items())
            if rid.kind in kinds
            and ((obj.get("metadata") or {}).get("labels") or {}).get(label) == value
        ]

    async def apply(self, doc: dict[str, Any]) -> dict[str, Any]:
        """Create or update an object.

        Namespaced objects can only be created in an existing namespace.
        """
        resource_id = NamedResource.from_doc(doc)
        await self._delay()
        self._check_failure("apply", resource_id)
        if is_namespaced(resource_id.kind):
            if not resource_id.namespace:
                raise ApplyError(str(resource_id), "namespace required", transient=False)
            ns_id = NamedResource(NAMESPACE_KIND, None, resource_id.namespace)
            if ns_id not in self._objects:
                raise ApplyError(
                    str(resource_id),
                    f'namespaces "{resource_id.namespace}" not found',
                    transient=False,
                )
        self.mutations.append(Mutation("apply", resource_id))
        _LOGGER.debug("Applying %s", resource_id)
        return copy.deepcopy(self._store(resource_id, doc))

    async def delete(self, resource_id: NamedResource) -> None:
        """Delete an object, and everything inside it for a Namespace."""
        await self._delay()
        self._check_failure("delete", resource_id)
        self.mutations.append(Mutation("delete", resource_id))
        _LOGGER.debug("Deleting %s", resource_id)
        self._objects.pop(resource_id, None)
        if resource_id.kind == NAMESPACE_KIND:
            for rid in [r for r in self._objects if r.namespace == resource_id.name]:
                del self._objects[rid]

    # Out of band changes, made by something other than the reconciler and
    # not recorded as mutations.

    def create(self, doc: dict[str, Any]) -> dict[str, Any]:
        """Create or replace an object directly."""
        return copy.deepcopy(self._store(NamedResource.from_doc(doc), doc))

    def edit(self, resource_id: NamedResource, patch: dict[str, Any]) -> dict[str, Any]:
        """Merge a patch into a live object, a None value removes a key."""
        if (existing := self._objects.get(resource_id)) is None:
            raise KeyError(str(resource_id))
        obj = copy.deepcopy(existing)
        _deep_merge(obj, patch)
        return copy.deepcopy(self._store(resource_id, obj))

    def set_status(self, resource_id: NamedResource, status: dict[str, Any]) -> None:
        """Replace the status of a live object, as a controller would."""
        self._objects[resource_id]["status"] = copy.deepcopy(status)

    def remove(self, resource_id: NamedResource) -> None:
        """Delete an object directly."""
        self._objects.pop(resource_id, None)

    def objects(self) -> dict[NamedResource, dict[str, Any]]:
        """Return a copy of all live objects."""
        return copy.deepcopy(self._objects)
