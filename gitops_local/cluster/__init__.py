"""Access to the live state of a destination cluster."""

from .cluster import Cluster
from .in_memory import InMemoryCluster, Mutation
from .kubectl import KubectlCluster, KubectlConfig

__all__ = [
    "Cluster",
    "InMemoryCluster",
    "Mutation",
    "KubectlCluster",
    "KubectlConfig",
]
