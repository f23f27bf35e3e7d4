"""Concurrent chunk dispatch."""

from .dispatcher import ConcurrentDispatcher, DispatchReport
from .worker_pool import BoundedWorkerPool

__all__ = ["ConcurrentDispatcher", "DispatchReport", "BoundedWorkerPool"]
