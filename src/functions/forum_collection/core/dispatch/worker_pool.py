"""Bounded thread pool that yields results as they complete."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Iterator, List, Sequence, Tuple, TypeVar

T = TypeVar("T")
R = TypeVar("R")


class BoundedWorkerPool:
    """Thin wrapper around ThreadPoolExecutor with a fixed worker count."""

    def __init__(self, max_workers: int, *, thread_name_prefix: str = "worker") -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self._max_workers = max_workers
        self._thread_name_prefix = thread_name_prefix

    @property
    def max_workers(self) -> int:
        return self._max_workers

    def execute(
        self,
        items: Sequence[T],
        func: Callable[[T], R],
    ) -> Iterator[Tuple[int, T, R]]:
        """Run *func* for each item concurrently and yield ``(index, item, result)`` in completion order."""

        if not items:
            return
        workers = min(self._max_workers, len(items))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=self._thread_name_prefix) as executor:
            futures = {executor.submit(func, item): (index, item) for index, item in enumerate(items)}
            for future in as_completed(futures):
                index, item = futures[future]
                yield index, item, future.result()

    def map_ordered(self, items: Sequence[T], func: Callable[[T], R]) -> List[R]:
        """Run concurrently, return results in input order."""

        results: List[R] = [None] * len(items)  # type: ignore[list-item]
        for index, _, result in self.execute(items, func):
            results[index] = result
        return results
