"""
.. include:: ../README.md
"""

__all__ = [
    "manifest",
    "packet",
    "channel",
    "values",
    "chart",
    "render",
    "kube",
    "releases",
    "store",
    "controller",
    "worker",
    "exceptions",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
