"""
REST client facade.

Request path:
    request() -> QueueManager -> RetryManager ->
        RateLimitManager.check -> HttpService.request ->
        RateLimitManager.update -> HttpService.raise_for_status
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any

from nyxcord.emitter import EventEmitter
from nyxcord.errors import NyxcordError
from nyxcord.rest.http import HttpService
from nyxcord.rest.queue import QueueManager
from nyxcord.rest.rate_limit import RateLimitManager
from nyxcord.rest.retry import RetryContext, RetryManager
from nyxcord.rest.types import (
    FileUpload,
    HttpMethod,
    RequestFinishEvent,
    RequestOptions,
    RestConfig,
    RestEvent,
    RestMetrics,
)

if TYPE_CHECKING:
    import random
    from collections.abc import Callable
    from types import TracebackType

    import aiohttp

    from nyxcord.emitter import Listener

logger = logging.getLogger(__name__)


class Rest:
    """
    Discord REST client with rate limiting, retries and a priority queue.

    Usage:
        async with Rest(RestConfig.from_token(token)) as rest:
            me = await rest.get("/users/@me")
    """

    def __init__(
        self,
        config: RestConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        time_fn: Callable[[], int] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """
        Initialize the REST client.

        Args:
            config: REST configuration.
            session: Optional externally owned aiohttp session.
            time_fn: Optional epoch-ms clock shared by the managers.
            rng: Optional seeded Random for retry jitter.
        """
        self._config = config
        self._events: EventEmitter[RestEvent] = EventEmitter()
        self._rate_limit = RateLimitManager(config.rate_limit, self._events, time_fn=time_fn)
        self._retry = RetryManager(config.retry, self._events, rng=rng)
        self._queue = QueueManager(config.queue, self._events, time_fn=time_fn)
        self._http = HttpService(config.http, self._events, session=session)
        self._metrics = RestMetrics()
        self._closed = False

        self._events.on(RestEvent.RATE_LIMIT_HIT, self._count_rate_limited)
        self._events.on(RestEvent.RETRY, self._count_retry)
        self._events.on(RestEvent.QUEUE_REJECT, self._count_queue_reject)
        self._events.on(RestEvent.QUEUE_TIMEOUT, self._count_queue_timeout)
        self._events.on(RestEvent.REQUEST_FINISH, self._record_latency)

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def config(self) -> RestConfig:
        return self._config

    @property
    def events(self) -> EventEmitter[RestEvent]:
        return self._events

    @property
    def rate_limit(self) -> RateLimitManager:
        return self._rate_limit

    @property
    def retry(self) -> RetryManager:
        return self._retry

    @property
    def queue(self) -> QueueManager:
        return self._queue

    @property
    def http(self) -> HttpService:
        return self._http

    @property
    def metrics(self) -> RestMetrics:
        return self._metrics

    @property
    def closed(self) -> bool:
        return self._closed

    def on(self, event: RestEvent, listener: Listener) -> Listener:
        return self._events.on(event, listener)

    def off(self, event: RestEvent, listener: Listener) -> None:
        self._events.off(event, listener)

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    async def request(
        self,
        method: HttpMethod,
        path: str,
        *,
        body: Any = None,
        query: dict[str, Any] | None = None,
        files: list[FileUpload] | None = None,
        reason: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """
        Perform an API request.

        Args:
            method: HTTP method.
            path: API path starting with "/" (without the /api/v10 prefix).
            body: JSON-serializable body (sent as payload_json with files).
            query: Query parameters (None values dropped).
            files: Attachments for a multipart upload.
            reason: Audit log reason.
            headers: Extra headers.

        Returns:
            Decoded response body (None for 204).

        Raises:
            RateLimitError: Rate limit persisted after retries.
            ApiError: Discord returned an error status.
            NetworkError: Transport failure persisted after retries.
            QueueFullError / QueueTimeoutError / QueueClearedError: Queue rejection.
        """
        if self._closed:
            msg = "Rest client is closed"
            raise NyxcordError(msg)

        options = RequestOptions(
            method=method,
            path=path,
            body=body,
            query=query,
            headers=headers,
            reason=reason,
            files=files,
        )
        request_id = uuid.uuid4().hex
        context = RetryContext(method=options.method, path=options.path, request_id=request_id)

        self._rate_limit.start()
        self._metrics.requests_total += 1
        try:
            result = await self._queue.enqueue(
                options,
                request_id,
                lambda: self._retry.execute(lambda: self._execute(options, request_id), context),
            )
        except Exception as e:
            self._metrics.requests_failed += 1
            logger.debug(
                "Request failed",
                extra={
                    "request_id": request_id,
                    "method": options.method,
                    "error_type": type(e).__name__,
                },
            )
            raise
        self._metrics.requests_succeeded += 1
        return result

    async def _execute(self, options: RequestOptions, request_id: str) -> Any:
        self._rate_limit.check_rate_limit(options.path, options.method)
        response = await self._http.request(options, request_id)
        self._rate_limit.update_rate_limit(
            options.path, options.method, response.headers, response.status
        )
        self._http.raise_for_status(options, response)
        return response.data

    async def get(self, path: str, **kwargs: Any) -> Any:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> Any:
        return await self.request("POST", path, **kwargs)

    async def put(self, path: str, **kwargs: Any) -> Any:
        return await self.request("PUT", path, **kwargs)

    async def patch(self, path: str, **kwargs: Any) -> Any:
        return await self.request("PATCH", path, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> Any:
        return await self.request("DELETE", path, **kwargs)

    async def get_gateway(self) -> dict[str, Any]:
        """GET /gateway: {"url": ...}."""
        result: dict[str, Any] = await self.get("/gateway")
        return result

    async def get_gateway_bot(self) -> dict[str, Any]:
        """GET /gateway/bot: url, recommended shards, session start limit."""
        result: dict[str, Any] = await self.get("/gateway/bot")
        return result

    # -------------------------------------------------------------------------
    # Metrics listeners
    # -------------------------------------------------------------------------

    def _count_rate_limited(self, _event: object) -> None:
        self._metrics.rate_limited += 1

    def _count_retry(self, _event: object) -> None:
        self._metrics.retries += 1

    def _count_queue_reject(self, _event: object) -> None:
        self._metrics.queue_rejected += 1

    def _count_queue_timeout(self, _event: object) -> None:
        self._metrics.queue_timed_out += 1

    def _record_latency(self, event: RequestFinishEvent) -> None:
        self._metrics.last_latency_ms = event.latency_ms

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Reject queued requests and release every resource. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._retry.destroy()
        await self._queue.destroy()
        await self._rate_limit.destroy()
        await self._http.close()
        await self._events.drain()
        self._events.remove_all_listeners()
        logger.info("Rest client closed")

    async def __aenter__(self) -> Rest:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    def get_status(self) -> dict[str, Any]:
        """Get aggregated component status for observability."""
        return {
            "closed": self._closed,
            "queue": self._queue.get_status(),
            "rate_limit": self._rate_limit.get_status(),
            "metrics": {
                "requests_total": self._metrics.requests_total,
                "requests_succeeded": self._metrics.requests_succeeded,
                "requests_failed": self._metrics.requests_failed,
                "rate_limited": self._metrics.rate_limited,
                "retries": self._metrics.retries,
            },
        }
