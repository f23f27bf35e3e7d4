"""Job scheduling and entity prioritisation."""

from .priority import PriorityScorer, ScoredEntity
from .scheduler import Scheduler

__all__ = ["PriorityScorer", "ScoredEntity", "Scheduler"]
