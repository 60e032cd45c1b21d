"""Executor for command packets."""

from .worker import CommandWorker

__all__ = [
    "CommandWorker",
]
