"""
The store module provides a central, type-safe repository for tracking the
Applications being reconciled, their versioned status records, sync history
and the artifacts produced while reconciling them.

- Uses NamedResource of the Application as the key for all values.
- Status records are immutable and replaced as a whole on every update.
- Listeners are notified of every change, which is how status is consumed
  by the command line tool and anything else watching the reconciler.

This abstract interface allows for various implementations (in-memory, persistent, etc.).
"""

from .store import Store, StoreEvent
from .in_memory import InMemoryStore
from .artifact import Artifact

__all__ = [
    "Store",
    "StoreEvent",
    "InMemoryStore",
    "Artifact",
]
