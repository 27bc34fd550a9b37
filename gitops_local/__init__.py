"""
.. include:: ../README.md
"""

__all__ = [
    "manifest",
    "status",
    "diff",
    "health",
    "source",
    "cluster",
    "controller",
    "exceptions",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
