"""Health assessment of live kubernetes objects.

Each supported kind has a rule that inspects the object spec and the status
written by its controller. Kinds without a rule are considered healthy once
they exist.
"""

from collections.abc import Callable
import logging
from typing import Any

from .status import HealthStatus

__all__ = ["assess_health"]

_LOGGER = logging.getLogger(__name__)

Doc = dict[str, Any]

POD_DEGRADED_REASONS = {
    "CrashLoopBackOff",
    "ImagePullBackOff",
    "ErrImagePull",
    "CreateContainerConfigError",
    "InvalidImageName",
}


def _status(obj: Doc) -> Doc:
    return obj.get("status") or {}


def _spec(obj: Doc) -> Doc:
    return obj.get("spec") or {}


def _condition(obj: Doc, condition_type: str) -> Doc | None:
    for condition in _status(obj).get("conditions") or ():
        if condition.get("type") == condition_type:
            return condition
    return None


def _generation_observed(obj: Doc) -> bool:
    generation = (obj.get("metadata") or {}).get("generation")
    observed = _status(obj).get("observedGeneration")
    if generation is None or observed is None:
        return observed is not None or generation is None
    return observed >= generation


def _deployment(obj: Doc) -> HealthStatus:
    if _spec(obj).get("paused"):
        return HealthStatus.SUSPENDED
    if not _generation_observed(obj):
        return HealthStatus.PROGRESSING
    progressing = _condition(obj, "Progressing")
    if progressing and progressing.get("reason") == "ProgressDeadlineExceeded":
        return HealthStatus.DEGRADED
    status = _status(obj)
    desired = _spec(obj).get("replicas", 1)
    updated = status.get("updatedReplicas", 0)
    replicas = status.get("replicas", 0)
    available = status.get("availableReplicas", 0)
    if updated < desired:
        return HealthStatus.PROGRESSING
    if replicas > updated:
        return HealthStatus.PROGRESSING
    if available < updated:
        return HealthStatus.PROGRESSING
    return HealthStatus.HEALTHY


def _replica_set(obj: Doc) -> HealthStatus:
    if not _generation_observed(obj):
        return HealthStatus.PROGRESSING
    failure = _condition(obj, "ReplicaFailure")
    if failure and failure.get("status") == "True":
        return HealthStatus.DEGRADED
    desired = _spec(obj).get("replicas", 1)
    if _status(obj).get("availableReplicas", 0) < desired:
        return HealthStatus.PROGRESSING
    return HealthStatus.HEALTHY


def _stateful_set(obj: Doc) -> HealthStatus:
    if not _generation_observed(obj):
        return HealthStatus.PROGRESSING
    status = _status(obj)
    desired = _spec(obj).get("replicas", 1)
    if status.get("readyReplicas", 0) < desired:
        return HealthStatus.PROGRESSING
    strategy = (_spec(obj).get("updateStrategy") or {}).get("type", "RollingUpdate")
    if strategy == "RollingUpdate" and status.get("updateRevision") != status.get(
        "currentRevision"
    ):
        return HealthStatus.PROGRESSING
    return HealthStatus.HEALTHY


def _daemon_set(obj: Doc) -> HealthStatus:
    if not _generation_observed(obj):
        return HealthStatus.PROGRESSING
    status = _status(obj)
    desired = status.get("desiredNumberScheduled", 0)
    if status.get("updatedNumberScheduled", 0) < desired:
        return HealthStatus.PROGRESSING
    if status.get("numberAvailable", 0) < desired:
        return HealthStatus.PROGRESSING
    return HealthStatus.HEALTHY


def _pod(obj: Doc) -> HealthStatus:
    status = _status(obj)
    for container in status.get("containerStatuses") or ():
        waiting = (container.get("state") or {}).get("waiting") or {}
        if waiting.get("reason") in POD_DEGRADED_REASONS:
            return HealthStatus.DEGRADED
    phase = status.get("phase")
    if phase == "Succeeded":
        return HealthStatus.HEALTHY
    if phase == "Failed":
        return HealthStatus.DEGRADED
    if phase == "Running":
        containers = status.get("containerStatuses") or ()
        if containers and all(c.get("ready") for c in containers):
            return HealthStatus.HEALTHY
    return HealthStatus.PROGRESSING


def _job(obj: Doc) -> HealthStatus:
    failed = _condition(obj, "Failed")
    if failed and failed.get("status") == "True":
        return HealthStatus.DEGRADED
    complete = _condition(obj, "Complete")
    if complete and complete.get("status") == "True":
        return HealthStatus.HEALTHY
    if _spec(obj).get("suspend"):
        return HealthStatus.SUSPENDED
    return HealthStatus.PROGRESSING


def _cron_job(obj: Doc) -> HealthStatus:
    if _spec(obj).get("suspend"):
        return HealthStatus.SUSPENDED
    return HealthStatus.HEALTHY


def _pvc(obj: Doc) -> HealthStatus:
    phase = _status(obj).get("phase")
    if phase == "Bound":
        return HealthStatus.HEALTHY
    if phase == "Lost":
        return HealthStatus.DEGRADED
    return HealthStatus.PROGRESSING


def _load_balanced(obj: Doc) -> bool:
    ingress = (_status(obj).get("loadBalancer") or {}).get("ingress")
    return bool(ingress)


def _service(obj: Doc) -> HealthStatus:
    if _spec(obj).get("type") == "LoadBalancer" and not _load_balanced(obj):
        return HealthStatus.PROGRESSING
    return HealthStatus.HEALTHY


def _ingress(obj: Doc) -> HealthStatus:
    if not _load_balanced(obj):
        return HealthStatus.PROGRESSING
    return HealthStatus.HEALTHY


_RULES: dict[str, Callable[[Doc], HealthStatus]] = {
    "Deployment": _deployment,
    "ReplicaSet": _replica_set,
    "StatefulSet": _stateful_set,
    "DaemonSet": _daemon_set,
    "Pod": _pod,
    "Job": _job,
    "CronJob": _cron_job,
    "PersistentVolumeClaim": _pvc,
    "Service": _service,
    "Ingress": _ingress,
}


def assess_health(obj: Doc | None) -> HealthStatus:
    """Return the health of a live object, Missing when it does not exist."""
    if obj is None:
        return HealthStatus.MISSING
    if (metadata := obj.get("metadata")) and metadata.get("deletionTimestamp"):
        return HealthStatus.PROGRESSING
    if (rule := _RULES.get(obj.get("kind", ""))) is None:
        return HealthStatus.HEALTHY
    health = rule(obj)
    _LOGGER.debug("Health of %s/%s is %s", obj.get("kind"), (metadata or {}).get("name"), health)
    return health
