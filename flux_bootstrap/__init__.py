"""
.. include:: ../README.md
"""

__all__ = [
    "bootstrap",
    "config",
    "manifestgen",
    "repository",
    "installer",
    "health",
    "exceptions",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
