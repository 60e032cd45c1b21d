"""Controller reconciling AgentRelease custom resources into packets."""

from .controller import ReconcileResult, ReleaseController, ReleaseState

__all__ = [
    "ReleaseController",
    "ReleaseState",
    "ReconcileResult",
]
