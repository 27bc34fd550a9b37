"""Artifact representation of a rendered desired state."""

from dataclasses import dataclass, field
from typing import Any

from gitops_local.store.artifact import Artifact


@dataclass(frozen=True, kw_only=True)
class SourceArtifact(Artifact):
    """Desired state documents rendered from a source at a revision.

    This object is written to the store after a comparison and reused by
    later passes while the source revision is unchanged. A hard refresh
    drops it.
    """

    repo_url: str
    """URL of the source, for informational/logging purposes."""

    revision: str
    """The resolved revision the documents were rendered from."""

    path: str
    """The path within the source that was rendered."""

    manifests: list[dict[str, Any]] = field(default_factory=list)
    """The rendered documents, not yet validated."""
