"""
HTTP service: one request/response cycle against the Discord API.

Statuses are returned, not raised; the REST client feeds headers to the
rate limit manager first and then calls raise_for_status(). Transport
failures are normalized into NetworkError with an errno-style code in the
message so the retry manager can classify them.
"""

from __future__ import annotations

import errno
import logging
import socket
import time
import uuid
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import aiohttp
import orjson

from nyxcord.errors import ApiError, NetworkError
from nyxcord.rest.types import (
    HttpConfig,
    HttpResponse,
    RequestFailureEvent,
    RequestFinishEvent,
    RequestOptions,
    RequestStartEvent,
    RestEvent,
)

if TYPE_CHECKING:
    from nyxcord.emitter import EventEmitter

logger = logging.getLogger(__name__)


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def classify_transport_error(exc: BaseException) -> str:
    """Map an aiohttp / asyncio transport failure to an errno-style code."""
    if isinstance(exc, (TimeoutError, aiohttp.ServerTimeoutError)):
        return "ETIMEDOUT"
    if isinstance(exc, aiohttp.ClientConnectorError):
        if isinstance(exc.os_error, socket.gaierror):
            return "ENOTFOUND"
        return "ECONNREFUSED"
    if isinstance(exc, aiohttp.ServerDisconnectedError):
        return "ECONNRESET"
    if isinstance(exc, aiohttp.ClientOSError):
        if exc.errno == errno.EPIPE:
            return "EPIPE"
        if exc.errno in (errno.ENETUNREACH, errno.EHOSTUNREACH):
            return errno.errorcode[exc.errno]
        return "ECONNRESET"
    if isinstance(exc, aiohttp.ClientPayloadError):
        return "ECONNRESET"
    return "EUNKNOWN"


class HttpService:
    """
    Executes authenticated requests with aiohttp.

    Usage:
        http = HttpService(HttpConfig(token="..."))
        response = await http.request(RequestOptions("GET", "/users/@me"))
        http.raise_for_status(options, response)
        await http.close()
    """

    def __init__(
        self,
        config: HttpConfig,
        emitter: EventEmitter[RestEvent] | None = None,
        *,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """
        Initialize the HTTP service.

        Args:
            config: Transport configuration.
            emitter: Optional event emitter for request telemetry.
            session: Optional externally owned ClientSession (not closed by close()).
        """
        self._config = config
        self._emitter = emitter
        self._session = session
        self._owns_session = session is None

    @property
    def config(self) -> HttpConfig:
        return self._config

    @property
    def api_base(self) -> str:
        return f"{self._config.base_url}/api/v{self._config.version}"

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._config.timeout_ms / 1000)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if this service created it."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def build_url(self, path: str) -> str:
        return f"{self.api_base}{path}"

    def build_headers(self, options: RequestOptions) -> dict[str, str]:
        headers = {
            "Authorization": f"Bot {self._config.token}",
            "User-Agent": self._config.user_agent,
            "X-RateLimit-Precision": "millisecond",
        }
        if not options.files:
            headers["Content-Type"] = "application/json"
        if options.reason:
            headers["X-Audit-Log-Reason"] = quote(options.reason, safe="")
        if options.headers:
            headers.update(options.headers)
        return headers

    def _build_body(self, options: RequestOptions) -> bytes | aiohttp.FormData | None:
        if options.files:
            form = aiohttp.FormData()
            if options.body is not None:
                form.add_field(
                    "payload_json",
                    orjson.dumps(options.body).decode(),
                    content_type="application/json",
                )
            for index, upload in enumerate(options.files):
                form.add_field(
                    f"files[{index}]",
                    upload.content,
                    filename=upload.filename,
                    content_type=upload.content_type,
                )
            return form
        if options.body is None:
            return None
        return orjson.dumps(options.body)

    async def request(self, options: RequestOptions, request_id: str | None = None) -> HttpResponse:
        """
        Send one request.

        Args:
            options: Request description.
            request_id: Identifier used in events (generated when omitted).

        Returns:
            HttpResponse with lower-cased headers and decoded body.

        Raises:
            NetworkError: Connection, DNS or timeout failure.
        """
        request_id = request_id or uuid.uuid4().hex
        params = (
            {k: _query_value(v) for k, v in options.query.items() if v is not None}
            if options.query
            else None
        )
        started = time.monotonic()
        self._emit(
            RestEvent.REQUEST_START,
            RequestStartEvent(
                request_id=request_id,
                method=options.method,
                path=options.path,
                timestamp_ms=int(time.time() * 1000),
            ),
        )

        try:
            session = await self._get_session()
            async with session.request(
                options.method,
                self.build_url(options.path),
                params=params,
                data=self._build_body(options),
                headers=self.build_headers(options),
            ) as response:
                raw = await response.read()
                headers = {k.lower(): v for k, v in response.headers.items()}
                status = response.status
                reason = response.reason or ""
                content_type = response.content_type
        except (aiohttp.ClientError, TimeoutError) as e:
            latency_ms = int((time.monotonic() - started) * 1000)
            code = classify_transport_error(e)
            error = NetworkError(
                f"Request failed ({code}): {e.__class__.__name__} {e}".rstrip(),
                code=code,
                method=options.method,
                path=options.path,
            )
            logger.warning(
                "HTTP request failed",
                extra={"request_id": request_id, "method": options.method, "code": code},
            )
            self._emit(
                RestEvent.REQUEST_FAILURE,
                RequestFailureEvent(
                    request_id=request_id,
                    method=options.method,
                    path=options.path,
                    error=error,
                    latency_ms=latency_ms,
                    timestamp_ms=int(time.time() * 1000),
                ),
            )
            raise error from e

        latency_ms = int((time.monotonic() - started) * 1000)
        data = self._decode_body(status, content_type, raw)

        logger.debug(
            "HTTP request finished",
            extra={
                "request_id": request_id,
                "method": options.method,
                "status": status,
                "latency_ms": latency_ms,
            },
        )
        self._emit(
            RestEvent.REQUEST_FINISH,
            RequestFinishEvent(
                request_id=request_id,
                method=options.method,
                path=options.path,
                status=status,
                latency_ms=latency_ms,
                timestamp_ms=int(time.time() * 1000),
            ),
        )
        return HttpResponse(
            status=status,
            headers=headers,
            data=data,
            latency_ms=latency_ms,
            reason=reason,
        )

    @staticmethod
    def _decode_body(status: int, content_type: str, raw: bytes) -> Any:
        if status == 204 or not raw:
            return None
        if content_type == "application/json":
            try:
                return orjson.loads(raw)
            except orjson.JSONDecodeError:
                logger.warning("Malformed JSON response body", extra={"status": status})
        return raw.decode("utf-8", errors="replace")

    def build_error(self, options: RequestOptions, response: HttpResponse) -> ApiError:
        """Map an error response to ApiError."""
        data = response.data
        if isinstance(data, dict) and "message" in data:
            code = data.get("code", 0)
            errors = data.get("errors")
            return ApiError(
                str(data["message"]),
                status=response.status,
                code=code if isinstance(code, int) else 0,
                method=options.method,
                path=options.path,
                errors=errors if isinstance(errors, dict) else None,
            )
        return ApiError(
            response.reason or f"HTTP {response.status}",
            status=response.status,
            code=0,
            method=options.method,
            path=options.path,
        )

    def raise_for_status(self, options: RequestOptions, response: HttpResponse) -> None:
        """
        Raises:
            ApiError: If response.status >= 400.
        """
        if response.status >= 400:
            raise self.build_error(options, response)

    def _emit(self, event: RestEvent, payload: object) -> None:
        if self._emitter is not None:
            self._emitter.emit(event, payload)
