"""
Priority request queue with a concurrency cap.

Dequeue order is priority first, then arrival order. The concurrency cap
bounds in-flight requests; request rate is the rate limit manager's job.
Wait-in-queue timeouts never apply to execution time.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

from nyxcord.errors import QueueClearedError, QueueFullError, QueueTimeoutError
from nyxcord.rest.types import (
    QueueCompleteEvent,
    QueueConfig,
    QueuePriority,
    QueueRejectEvent,
    QueueTimeoutEvent,
    RequestOptions,
    RestEvent,
)

if TYPE_CHECKING:
    from nyxcord.emitter import EventEmitter

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class QueueItem:
    """A request waiting for an execution slot."""

    id: str
    timestamp: int
    path: str
    method: str
    priority: int
    execute: Callable[[], Awaitable[Any]]
    future: asyncio.Future[Any]
    timeout_handle: asyncio.TimerHandle | None = field(default=None, repr=False)

    def cancel_timeout(self) -> None:
        if self.timeout_handle is not None:
            self.timeout_handle.cancel()
            self.timeout_handle = None


class QueueManager:
    """
    Stable priority queue feeding a bounded pool of executions.

    Usage:
        queue = QueueManager(QueueConfig(concurrency=5))
        result = await queue.enqueue(options, request_id, lambda: http.request(options))
    """

    def __init__(
        self,
        config: QueueConfig | None = None,
        emitter: EventEmitter[RestEvent] | None = None,
        *,
        time_fn: Callable[[], int] | None = None,
    ) -> None:
        self._config = config or QueueConfig()
        self._emitter = emitter
        self._time_fn = time_fn

        self._queue: list[QueueItem] = []
        self._running = 0
        self._tasks: set[asyncio.Task[None]] = set()

    def _now_ms(self) -> int:
        """Get current time in milliseconds."""
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    @property
    def size(self) -> int:
        return len(self._queue)

    @property
    def running(self) -> int:
        return self._running

    @property
    def concurrency(self) -> int:
        return self._config.concurrency

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    @property
    def max_queue_size(self) -> int:
        return self._config.max_queue_size

    def get_priority(self, path: str, method: str) -> int:
        """
        Priority for a request; first matching rule wins.

        1. explicit "{METHOD}:{path}" override from config
        2. interaction routes -> HIGH
        3. message create/edit -> HIGH
        4. GET (except /gateway) -> LOW
        5. everything else -> NORMAL
        """
        route_key = f"{method}:{path}"
        if route_key in self._config.priorities:
            return self._config.priorities[route_key]
        if "/interactions" in path:
            return QueuePriority.HIGH
        if "/messages" in path and method in ("POST", "PATCH"):
            return QueuePriority.HIGH
        if method == "GET" and "/gateway" not in path:
            return QueuePriority.LOW
        return QueuePriority.NORMAL

    async def enqueue(
        self,
        options: RequestOptions,
        request_id: str,
        executor: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Queue executor and wait for its result.

        Args:
            options: Request being queued (method and path decide priority).
            request_id: Identifier used in events.
            executor: Zero-argument coroutine factory performing the request.

        Returns:
            The executor's result.

        Raises:
            QueueFullError: Queue at max_queue_size (raised immediately).
            QueueTimeoutError: Waited longer than timeout_ms before starting.
            QueueClearedError: Queue was cleared while waiting.
        """
        if not self._config.enabled:
            return await executor()

        priority = self.get_priority(options.path, options.method)

        if len(self._queue) >= self._config.max_queue_size:
            logger.warning(
                "Request queue full, rejecting request",
                extra={"request_id": request_id, "queue_size": len(self._queue)},
            )
            self._emit(
                RestEvent.QUEUE_REJECT,
                QueueRejectEvent(
                    request_id=request_id,
                    method=options.method,
                    path=options.path,
                    priority=priority,
                    queue_size=len(self._queue),
                    max_queue_size=self._config.max_queue_size,
                    timestamp_ms=self._now_ms(),
                ),
            )
            raise QueueFullError(
                f"Queue size limit exceeded ({self._config.max_queue_size})",
                queue_size=len(self._queue),
            )

        loop = asyncio.get_running_loop()
        item = QueueItem(
            id=request_id,
            timestamp=self._now_ms(),
            path=options.path,
            method=options.method,
            priority=priority,
            execute=executor,
            future=loop.create_future(),
        )
        if self._config.timeout_ms > 0:
            item.timeout_handle = loop.call_later(
                self._config.timeout_ms / 1000, self._handle_timeout, item
            )

        self._insert(item)
        self._process_queue()
        return await item.future

    def _insert(self, item: QueueItem) -> None:
        for index, queued in enumerate(self._queue):
            if queued.priority < item.priority:
                self._queue.insert(index, item)
                return
        self._queue.append(item)

    def _process_queue(self) -> None:
        while self._running < self._config.concurrency and self._queue:
            item = self._queue.pop(0)
            item.cancel_timeout()
            if item.future.done():
                # Caller stopped waiting
                continue

            self._running += 1
            queue_time_ms = self._now_ms() - item.timestamp
            task = asyncio.get_running_loop().create_task(self._execute_item(item, queue_time_ms))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _execute_item(self, item: QueueItem, queue_time_ms: int) -> None:
        success = False
        try:
            result = await item.execute()
        except asyncio.CancelledError:
            if not item.future.done():
                item.future.cancel()
            raise
        except Exception as e:
            if not item.future.done():
                item.future.set_exception(e)
        else:
            success = True
            if not item.future.done():
                item.future.set_result(result)
        finally:
            self._running -= 1
            self._process_queue()

        self._emit(
            RestEvent.QUEUE_COMPLETE,
            QueueCompleteEvent(
                request_id=item.id,
                method=item.method,
                path=item.path,
                priority=item.priority,
                queue_time_ms=queue_time_ms,
                success=success,
                timestamp_ms=self._now_ms(),
            ),
        )

    def _handle_timeout(self, item: QueueItem) -> None:
        item.timeout_handle = None
        try:
            self._queue.remove(item)
        except ValueError:
            return

        queue_time_ms = self._now_ms() - item.timestamp
        logger.warning(
            "Request timed out in queue",
            extra={"request_id": item.id, "queue_time_ms": queue_time_ms},
        )
        self._emit(
            RestEvent.QUEUE_TIMEOUT,
            QueueTimeoutEvent(
                request_id=item.id,
                method=item.method,
                path=item.path,
                priority=item.priority,
                queue_time_ms=queue_time_ms,
                timestamp_ms=self._now_ms(),
            ),
        )
        if not item.future.done():
            item.future.set_exception(
                QueueTimeoutError(
                    f"Request timed out in queue after {self._config.timeout_ms}ms",
                    queue_time_ms=queue_time_ms,
                )
            )

    def clear(self, reason: str = "Queue cleared") -> int:
        """
        Reject every queued (not yet executing) request.

        Returns:
            Number of requests rejected.
        """
        items, self._queue = self._queue, []
        for item in items:
            item.cancel_timeout()
            if not item.future.done():
                item.future.set_exception(QueueClearedError(reason, reason=reason))
        if items:
            logger.info("Request queue cleared", extra={"count": len(items), "reason": reason})
        return len(items)

    async def destroy(self) -> None:
        """Clear the queue and cancel in-flight executions."""
        self.clear("Queue destroyed")
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def _emit(self, event: RestEvent, payload: object) -> None:
        if self._emitter is not None:
            self._emitter.emit(event, payload)

    def get_status(self) -> dict[str, int | bool]:
        """Get current queue status for observability."""
        return {
            "enabled": self._config.enabled,
            "size": len(self._queue),
            "running": self._running,
            "concurrency": self._config.concurrency,
            "max_queue_size": self._config.max_queue_size,
        }
