"""The desired-state fetcher module.

This module resolves the revision of an Application source and renders the
manifest tree at that revision, from git repositories or local directories.
"""

from .artifact import SourceArtifact
from .dispatch import DefaultFetcher
from .fetcher import DirectoryFetcher, SourceConfig, SourceFetcher
from .git import GitFetcher

__all__ = [
    "SourceArtifact",
    "SourceFetcher",
    "SourceConfig",
    "DefaultFetcher",
    "DirectoryFetcher",
    "GitFetcher",
]
