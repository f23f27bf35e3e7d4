"""Progress tracking for long-running collection jobs."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, Optional

import psutil

logger = logging.getLogger(__name__)


class ProgressTracker:
    """Tracks processing progress and calculates metrics.

    Example:
        tracker = ProgressTracker(total_items=250, label="job chronological-foodnyc")

        for item in items:
            ok = process(item)
            tracker.increment(success=ok)
            if tracker.should_log():
                tracker.log_progress()

        tracker.log_summary()
    """

    def __init__(
        self,
        total_items: int,
        label: str,
        *,
        log_interval: int = 10,
        log_time_interval: int = 30,
    ):
        """Initialize progress tracker.

        Args:
            total_items: Total number of items to process (0 when unknown)
            label: Name used in log lines
            log_interval: Number of items between logs
            log_time_interval: Seconds between time-based logs
        """
        self.total_items = total_items
        self.label = label
        self.log_interval = log_interval
        self.log_time_interval = log_time_interval

        self.start_time = time.time()
        self.processed_count = 0
        self.success_count = 0
        self.error_count = 0
        self.lock = threading.Lock()
        self.last_log_time = self.start_time
        self.last_log_count = 0

    def increment(self, success: bool = True) -> None:
        with self.lock:
            self.processed_count += 1
            if success:
                self.success_count += 1
            else:
                self.error_count += 1

    def should_log(self) -> bool:
        """Check if progress should be logged."""
        with self.lock:
            count_trigger = self.processed_count - self.last_log_count >= self.log_interval
            time_trigger = time.time() - self.last_log_time >= self.log_time_interval
            return count_trigger or time_trigger

    def log_progress(self, extra_stats: Optional[Dict[str, Any]] = None) -> None:
        """Log current progress with rate, ETA and memory usage."""
        with self.lock:
            elapsed_hours = (time.time() - self.start_time) / 3600
            rate = self.processed_count / elapsed_hours if elapsed_hours > 0 else 0

            remaining = max(self.total_items - self.processed_count, 0)
            eta_hours = remaining / rate if rate > 0 else 0

            percent = (
                (self.processed_count / self.total_items * 100)
                if self.total_items > 0
                else 0
            )

            parts = [
                f"Progress: {self.processed_count:,}/{self.total_items:,} ({percent:.1f}%)",
                f"Rate: {rate:.0f} items/h",
            ]

            memory = psutil.virtual_memory()
            parts.append(
                f"Memory: {memory.percent:.0f}% ({memory.used / (1024**3):.1f}/{memory.total / (1024**3):.1f}GB)"
            )

            if extra_stats:
                for key, value in extra_stats.items():
                    if isinstance(value, float):
                        parts.append(f"{key}: {value:.1f}")
                    else:
                        parts.append(f"{key}: {value}")

            parts.extend([
                f"Errors: {self.error_count}",
                f"ETA: {eta_hours:.1f}h",
                self.label,
            ])

            logger.info(" | ".join(parts))

            self.last_log_time = time.time()
            self.last_log_count = self.processed_count

    def log_summary(self) -> None:
        """Log final summary."""
        elapsed_seconds = time.time() - self.start_time
        summary_parts = [
            f"Total processed: {self.processed_count:,}",
            f"Successful: {self.success_count:,}",
            f"Errors: {self.error_count:,}",
            f"Time: {elapsed_seconds:.1f}s",
            f"Final memory: {psutil.virtual_memory().percent:.0f}%",
            self.label,
        ]
        logger.info("Processing complete:\n  " + "\n  ".join(summary_parts))
