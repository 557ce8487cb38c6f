"""Generation Queue
===================

Runs generation jobs one at a time in arrival order so a replica never
runs several pipelines in parallel. A failing job is logged and the loop
moves on to the next one.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class QueueItem:
    user_id: str
    username: str
    execute: Callable[[], Awaitable[Any]]
    enqueued_at: float = 0.0


class GenerationQueue:
    """Sequential asyncio queue for generation jobs.

    Usage:
        queue = GenerationQueue()
        queue.enqueue(QueueItem(user_id, username, lambda: orchestrator.run(job)))
        await queue.drain()  # tests / shutdown
    """

    def __init__(self):
        self._items: Deque[QueueItem] = deque()
        self._active: Optional[QueueItem] = None
        self._task: Optional[asyncio.Task] = None
        self.completed = 0
        self.failed = 0

    @property
    def processing(self) -> bool:
        return self._task is not None and not self._task.done()

    def enqueue(self, item: QueueItem) -> int:
        """Add a job; returns its 1-based position counting the active job."""
        item.enqueued_at = item.enqueued_at or time.monotonic()
        self._items.append(item)
        position = len(self._items) + (1 if self._active else 0)
        logger.info(f"Enqueued job for {item.username} ({item.user_id}), position {position}")
        self._kick()
        return position

    def _kick(self) -> None:
        if self.processing:
            return
        self._task = asyncio.get_running_loop().create_task(self._process_loop())

    async def _process_loop(self) -> None:
        while self._items:
            item = self._items.popleft()
            self._active = item
            started = time.monotonic()
            try:
                await item.execute()
                self.completed += 1
                logger.info(f"✓ Job completed for {item.username} in {time.monotonic() - started:.1f}s")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failed += 1
                logger.error(
                    f"✗ Job failed for {item.username} after {time.monotonic() - started:.1f}s: {e}",
                    exc_info=True,
                )
            finally:
                self._active = None

    def has_user_in_queue(self, user_id: str) -> bool:
        if self._active is not None and self._active.user_id == user_id:
            return True
        return any(item.user_id == user_id for item in self._items)

    def get_status(self) -> Dict[str, Any]:
        queue: List[Dict[str, Any]] = [
            {'position': index + 1, 'username': item.username}
            for index, item in enumerate(self._items)
        ]
        return {
            'active': self._active.username if self._active else None,
            'queue': queue,
            'completed': self.completed,
            'failed': self.failed,
        }

    async def drain(self) -> None:
        """Wait until every queued job has run."""
        while self.processing:
            await asyncio.shield(self._task)


# Singleton instance
_queue: Optional[GenerationQueue] = None


def get_generation_queue() -> GenerationQueue:
    global _queue
    if _queue is None:
        _queue = GenerationQueue()
    return _queue
