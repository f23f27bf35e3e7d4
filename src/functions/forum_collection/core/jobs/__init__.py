"""Job registry and the per-job state machine."""

from .registry import InMemoryLiveJobRegistry, LiveJobRegistry, SupabaseLiveJobRegistry
from .state_machine import CollectionJobRunner, classify_error

__all__ = [
    "InMemoryLiveJobRegistry",
    "LiveJobRegistry",
    "SupabaseLiveJobRegistry",
    "CollectionJobRunner",
    "classify_error",
]
