"""Artifact types for the Application controller."""

from dataclasses import dataclass, field
from typing import Any

from gitops_local.store.artifact import Artifact


@dataclass(frozen=True, kw_only=True)
class SyncedArtifact(Artifact):
    """The normalized desired state most recently applied to the cluster.

    Drift checks compare live state against these documents rather than
    against a new fetch.

    Attributes:
        revision: Source revision the documents were rendered from
        manifests: Normalized documents, as sent to the cluster
    """

    revision: str
    manifests: list[dict[str, Any]] = field(default_factory=list)
