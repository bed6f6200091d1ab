"""
Admission control and serialized processing per channel.

Every channel key gets its own ChannelQueue. `admit` is synchronous so the
caller knows immediately whether to send the "too many pending messages"
notice; accepted items are handled by at most one worker task per key,
strictly in order, with a fixed pause between items.

Usage:
    manager = QueueManager(orchestrator.process, on_failure=orchestrator.notify_failure)
    if not manager.admit(channel_key(message), message):
        await orchestrator.notify_busy(message)
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from common.config import MAX_QUEUE_SIZE, PROCESSING_DELAY

from .channel_queue import ChannelQueue, QueuedItem

logger = logging.getLogger(__name__)

ProcessFn = Callable[[QueuedItem], Awaitable[Any]]
FailureFn = Callable[[QueuedItem, BaseException], Awaitable[Any]]


class QueueManager:
    def __init__(
        self,
        process: ProcessFn,
        on_failure: Optional[FailureFn] = None,
        max_queue_size: int = MAX_QUEUE_SIZE,
        processing_delay: float = PROCESSING_DELAY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._process = process
        self._on_failure = on_failure
        self.max_queue_size = max_queue_size
        self.processing_delay = processing_delay
        self._sleep = sleep

        self._queues: dict[str, ChannelQueue] = {}
        self._workers: set[asyncio.Task] = set()

    def _queue_for(self, key: str) -> ChannelQueue:
        queue = self._queues.get(key)
        if queue is None:
            queue = self._queues[key] = ChannelQueue()
        return queue

    def admit(self, key: str, payload: Any) -> bool:
        """
        Queue *payload* for *key*.

        Returns False, without touching the queue, when it already holds
        `max_queue_size` items. Must be called from the running event loop.
        """
        queue = self._queue_for(key)
        if len(queue.items) >= self.max_queue_size:
            logger.warning(f"Queue full for {key} ({len(queue.items)} pending), rejecting message")
            return False

        queue.items.append(QueuedItem(payload))
        logger.debug(f"Queued message for {key} (queue length: {len(queue.items)})")

        if not queue.busy:
            # Set before the task runs so a second admit in the same tick can't start another worker
            queue.busy = True
            task = asyncio.get_running_loop().create_task(self._run_worker(key, queue))
            self._workers.add(task)
            task.add_done_callback(self._workers.discard)
        return True

    async def _run_worker(self, key: str, queue: ChannelQueue) -> None:
        try:
            while queue.items:
                item = queue.items[0]
                try:
                    await self._process(item)
                except Exception as e:
                    logger.error(f"Error processing message for {key}: {e}", exc_info=True)
                    await self._notify_failure(key, item, e)
                finally:
                    queue.items.popleft()

                if queue.items:
                    await self._sleep(self.processing_delay)
        finally:
            queue.busy = False
            logger.debug(f"Worker for {key} idle")

    async def _notify_failure(self, key: str, item: QueuedItem, error: Exception) -> None:
        if self._on_failure is None:
            return
        try:
            await self._on_failure(item, error)
        except Exception as e:
            logger.error(f"Error sending failure notice for {key}: {e}")

    # ============== INTROSPECTION ==============

    def queue_length(self, key: str) -> int:
        queue = self._queues.get(key)
        return len(queue.items) if queue else 0

    def is_busy(self, key: str) -> bool:
        queue = self._queues.get(key)
        return bool(queue and queue.busy)

    def stats(self) -> dict:
        return {
            "channels": len(self._queues),
            "active_workers": len(self._workers),
            "pending": {key: len(q.items) for key, q in self._queues.items() if q.items},
            "busy": sorted(key for key, q in self._queues.items() if q.busy),
        }

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for running workers to finish. Returns False on timeout."""
        if not self._workers:
            return True
        done, pending = await asyncio.wait(set(self._workers), timeout=timeout)
        if pending:
            logger.warning(f"{len(pending)} queue workers still running after {timeout}s")
        return not pending
