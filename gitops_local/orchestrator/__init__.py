"""Orchestrator module for gitops-local."""

from .loader import ApplicationLoader, LoadOptions
from .orchestrator import Orchestrator, OrchestratorConfig, has_failed

__all__ = [
    "ApplicationLoader",
    "LoadOptions",
    "Orchestrator",
    "OrchestratorConfig",
    "has_failed",
]
