"""Application controller module.

This module provides the Reconciler that drives a single Application through
its state machine, and the ApplicationController that schedules reconcile
passes for every Application in the store.
"""

from .artifact import SyncedArtifact
from .config import ControllerConfig
from .controller import ApplicationController, ClusterFactory
from .reconciler import Reconciler

__all__ = [
    "ApplicationController",
    "ClusterFactory",
    "ControllerConfig",
    "Reconciler",
    "SyncedArtifact",
]
