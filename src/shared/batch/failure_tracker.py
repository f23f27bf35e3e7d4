"""Failure tracking for batch processing."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Set

logger = logging.getLogger(__name__)


class FailureTracker:
    """Tracks failed work items per stage for reporting.

    Records failures with context (error message, category, traceback,
    timestamp) and remembers which items were skipped for the rest of a run.

    Example:
        tracker = FailureTracker()

        try:
            fetch_thread(item_id)
        except SourceNotFoundError as e:
            tracker.record_failure("fetch", item_id, str(e), category="source_api_error")
            tracker.mark_skipped("fetch", item_id)

        tracker.get_summary()  # {"fetch": 1, "fetch_skipped": 1}
    """

    def __init__(self) -> None:
        self.failures: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.lock = threading.Lock()
        self.attempt_counts: Dict[str, Dict[str, int]] = defaultdict(dict)
        self.skipped_items: Dict[str, Set[str]] = defaultdict(set)

    def mark_skipped(self, stage: str, item_id: str) -> None:
        """Record that an item is skipped for the remainder of this run."""
        with self.lock:
            self.skipped_items[stage].add(item_id)

    def record_failure(
        self,
        stage: str,
        item_id: str,
        error: str,
        *,
        category: str = "unknown_error",
        tb: str = "",
    ) -> int:
        """Record a processing failure.

        Args:
            stage: Stage name (fetch, dispatch, merge, ...)
            item_id: Work item ID
            error: Error message
            category: Monitoring category of the error
            tb: Traceback string

        Returns:
            Number of recorded attempts for this item/stage
        """
        with self.lock:
            stage_attempts = self.attempt_counts[stage]
            stage_attempts[item_id] = stage_attempts.get(item_id, 0) + 1
            attempt_count = stage_attempts[item_id]
            self.failures[stage].append(
                {
                    "item_id": item_id,
                    "error": str(error),
                    "category": category,
                    "traceback": tb,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "attempt": attempt_count,
                }
            )
            return attempt_count

    def get_summary(self) -> Dict[str, int]:
        """Get failure counts by stage, plus ``<stage>_skipped`` counts."""
        with self.lock:
            summary = {stage: len(failures) for stage, failures in self.failures.items()}
            for stage, skipped in self.skipped_items.items():
                if skipped:
                    summary[f"{stage}_skipped"] = len(skipped)
            return summary
