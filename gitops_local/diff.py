"""Module for computing the difference between desired and live state.

The comparison is structural and one sided: a live object matches the desired
document when every field the desired document declares has the same value
in the live object. Fields written by the API server or by controllers (uid,
status, defaults) are never considered.
"""

from collections.abc import Generator, Iterable
from dataclasses import dataclass, field
import difflib
from enum import StrEnum
import json
import logging
from typing import Any, TypeVar

import yaml

from .manifest import NAMESPACE_KIND, NamedResource, sync_wave
from .status import SyncStatus

__all__ = [
    "DiffAction",
    "ResourceDiff",
    "DiffResult",
    "compare",
    "SyncPlan",
    "build_plan",
]

_LOGGER = logging.getLogger(__name__)

_TRUNCATE = "[Diff truncated by gitops-local]"

T = TypeVar("T")

# Apply order within a sync wave, kinds not listed are applied last
KIND_ORDER = [
    "Namespace",
    "NetworkPolicy",
    "ResourceQuota",
    "LimitRange",
    "PodDisruptionBudget",
    "ServiceAccount",
    "Secret",
    "ConfigMap",
    "StorageClass",
    "PersistentVolume",
    "PersistentVolumeClaim",
    "CustomResourceDefinition",
    "ClusterRole",
    "ClusterRoleBinding",
    "Role",
    "RoleBinding",
    "Service",
    "DaemonSet",
    "Pod",
    "ReplicationController",
    "ReplicaSet",
    "Deployment",
    "HorizontalPodAutoscaler",
    "StatefulSet",
    "Job",
    "CronJob",
    "IngressClass",
    "Ingress",
    "APIService",
]


class DiffAction(StrEnum):
    """The change needed to make a live resource match desired state."""

    NONE = "None"
    CREATE = "Create"
    UPDATE = "Update"
    PRUNE = "Prune"


def _unique_keys(k1: dict[T, Any], k2: dict[T, Any]) -> Iterable[T]:
    """Return an ordered set."""
    return {
        **{k: True for k in k1.keys()},
        **{k: True for k in k2.keys()},
    }.keys()


def matches(desired: Any, live: Any) -> bool:
    """Return true if every field declared in desired has the same value in live."""
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        return all(key in live and matches(value, live[key]) for key, value in desired.items())
    if isinstance(desired, list):
        if not isinstance(live, list) or len(desired) != len(live):
            return False
        return all(matches(d, l) for d, l in zip(desired, live))
    return bool(desired == live)


def project(desired: Any, live: Any) -> Any:
    """Return the subset of live that has the shape of desired, for display."""
    if isinstance(desired, dict) and isinstance(live, dict):
        return {key: project(value, live[key]) for key, value in desired.items() if key in live}
    if isinstance(desired, list) and isinstance(live, list):
        return [
            project(desired[i], value) if i < len(desired) else value
            for i, value in enumerate(live)
        ]
    return live


@dataclass
class ResourceDiff:
    """The comparison result for a single resource."""

    resource_id: NamedResource
    action: DiffAction
    desired: dict[str, Any] | None = None
    live: dict[str, Any] | None = None

    @property
    def sync_status(self) -> SyncStatus:
        if self.action == DiffAction.NONE:
            return SyncStatus.SYNCED
        return SyncStatus.OUT_OF_SYNC

    def lines(self) -> tuple[list[str], list[str]]:
        """Return the live and desired documents as comparable yaml lines."""
        live: list[str] = []
        desired: list[str] = []
        if self.live is not None:
            shaped = project(self.desired, self.live) if self.desired else self.live
            live = yaml.dump(shaped, sort_keys=False).splitlines()
        if self.desired is not None:
            desired = yaml.dump(self.desired, sort_keys=False).splitlines()
        return live, desired

    def unified_diff(self, n: int = 3) -> list[str]:
        """Return a unified diff from live to desired state."""
        live, desired = self.lines()
        return list(
            difflib.unified_diff(
                live,
                desired,
                fromfile=f"live {self.resource_id}",
                tofile=f"desired {self.resource_id}",
                n=n,
                lineterm="",
            )
        )


@dataclass
class DiffResult:
    """The comparison of all desired and managed live resources."""

    diffs: list[ResourceDiff] = field(default_factory=list)

    @property
    def sync_status(self) -> SyncStatus:
        """Synced when no resource needs a change."""
        if any(d.action != DiffAction.NONE for d in self.diffs):
            return SyncStatus.OUT_OF_SYNC
        return SyncStatus.SYNCED

    @property
    def changed(self) -> list[ResourceDiff]:
        return [d for d in self.diffs if d.action in (DiffAction.CREATE, DiffAction.UPDATE)]

    @property
    def prunable(self) -> list[ResourceDiff]:
        return [d for d in self.diffs if d.action == DiffAction.PRUNE]

    def get(self, resource_id: NamedResource) -> ResourceDiff | None:
        for diff in self.diffs:
            if diff.resource_id == resource_id:
                return diff
        return None


def compare(
    desired: dict[NamedResource, dict[str, Any]],
    live: dict[NamedResource, dict[str, Any] | None],
    managed: dict[NamedResource, dict[str, Any]],
) -> DiffResult:
    """Compare desired documents against live objects.

    Args:
        desired: Normalized desired documents by resource id.
        live: Live objects for each desired resource id, None when missing.
        managed: Live objects carrying the tracking label of the Application,
            any not present in desired are candidates for pruning.
    """
    result = DiffResult()
    for resource_id, doc in desired.items():
        live_obj = live.get(resource_id)
        if live_obj is None:
            action = DiffAction.CREATE
        elif matches(doc, live_obj):
            action = DiffAction.NONE
        else:
            action = DiffAction.UPDATE
        _LOGGER.debug("Compared %s: %s", resource_id, action)
        result.diffs.append(ResourceDiff(resource_id, action, doc, live_obj))
    for resource_id in sorted(managed):
        if resource_id in desired:
            continue
        _LOGGER.debug("Compared %s: %s", resource_id, DiffAction.PRUNE)
        result.diffs.append(
            ResourceDiff(resource_id, DiffAction.PRUNE, None, managed[resource_id])
        )
    return result


def perform_unified_diff(result: DiffResult, n: int, limit_bytes: int) -> Generator[str, None, None]:
    """Generate unified diff lines for every resource that differs."""
    for diff in result.diffs:
        if diff.action == DiffAction.NONE:
            continue
        size = 0
        for line in diff.unified_diff(n):
            size += len(line)
            if limit_bytes and size > limit_bytes:
                yield _TRUNCATE
                break
            yield line


def _structured_diffs(result: DiffResult, n: int, limit_bytes: int) -> list[dict[str, Any]]:
    diffs = []
    for diff in result.diffs:
        if diff.action == DiffAction.NONE:
            continue
        diff_content = "\n".join(diff.unified_diff(n))
        if limit_bytes and len(diff_content) > limit_bytes:
            diff_content = diff_content[:limit_bytes] + "\n" + _TRUNCATE
        diffs.append(
            {
                "kind": diff.resource_id.kind,
                **({"namespace": diff.resource_id.namespace} if diff.resource_id.namespace else {}),
                "name": diff.resource_id.name,
                "action": str(diff.action),
                "diff": diff_content,
            }
        )
    return diffs


def perform_yaml_diff(result: DiffResult, n: int, limit_bytes: int) -> Generator[str, None, None]:
    """Generate a yaml document describing the resources that differ."""
    if diffs := _structured_diffs(result, n, limit_bytes):
        yield yaml.dump(diffs, sort_keys=False, explicit_start=True, default_style=None)


def perform_json_diff(result: DiffResult, n: int, limit_bytes: int) -> Generator[str, None, None]:
    """Generate a json document describing the resources that differ."""
    if diffs := _structured_diffs(result, n, limit_bytes):
        yield json.dumps(diffs, sort_keys=False, indent=4)


def kind_rank(kind: str) -> int:
    """Return the apply order of a kind within a sync wave."""
    try:
        return KIND_ORDER.index(kind)
    except ValueError:
        return len(KIND_ORDER)


@dataclass
class SyncStep:
    """A group of resources that may be applied concurrently."""

    wave: int
    kind: str
    diffs: list[ResourceDiff]


@dataclass
class SyncPlan:
    """Ordered steps of a sync operation.

    Steps are applied one after another. Prunes always run after every apply
    step succeeded.
    """

    create_namespace: str | None = None
    """Destination namespace to create before any other step."""

    steps: list[SyncStep] = field(default_factory=list)
    prunes: list[ResourceDiff] = field(default_factory=list)
    skipped_prunes: list[ResourceDiff] = field(default_factory=list)

    @property
    def applies(self) -> list[ResourceDiff]:
        return [diff for step in self.steps for diff in step.diffs]

    @property
    def empty(self) -> bool:
        return not (self.create_namespace or self.steps or self.prunes)


def build_plan(
    result: DiffResult, prune: bool, create_namespace: str | None = None
) -> SyncPlan:
    """Build the ordered sync plan for the out of sync resources of a comparison.

    Namespace objects are always applied before any other kind regardless of
    sync wave so that objects inside them can be created.
    """
    plan = SyncPlan(create_namespace=create_namespace)
    groups: dict[tuple[int, int, str], list[ResourceDiff]] = {}
    for diff in result.changed:
        if diff.resource_id.kind == NAMESPACE_KIND:
            if create_namespace == diff.resource_id.name:
                plan.create_namespace = None
            key = (-(2**31), 0, NAMESPACE_KIND)
        else:
            wave = sync_wave(diff.desired or {})
            key = (wave, kind_rank(diff.resource_id.kind), diff.resource_id.kind)
        groups.setdefault(key, []).append(diff)
    for (wave, _, kind), diffs in sorted(groups.items()):
        plan.steps.append(SyncStep(wave=wave, kind=kind, diffs=diffs))
    prunable = sorted(
        result.prunable,
        key=lambda d: (kind_rank(d.resource_id.kind), d.resource_id),
        reverse=True,
    )
    if prune:
        plan.prunes = prunable
    else:
        plan.skipped_prunes = prunable
    return plan
