"""
Gateway connection state machine.

One supervisor task owns the socket lifecycle:

    DISCONNECTED -> CONNECTING -> IDENTIFYING / RESUMING -> CONNECTED
         ^                                                     |
         +---------------- reconnect (backoff) <---------------+

CLOSED is terminal: reached through destroy(), a fatal close code, or
exhausted reconnect attempts. Frames are processed in receive order on the
supervisor task; the heartbeat runs on its own task.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import platform
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import aiohttp
import pydantic

from nyxcord.backoff import (
    BackoffConfig,
    BackoffState,
    SendThrottler,
    compute_backoff_delay,
    invalid_session_delay_ms,
)
from nyxcord.emitter import EventEmitter
from nyxcord.errors import (
    CompressionError,
    EncodingError,
    GatewayError,
    GatewayFatalError,
    GatewayReconnectError,
    NyxcordError,
    ValidationError,
)
from nyxcord.gateway.compression import ZlibStreamDecompressor
from nyxcord.gateway.encoding import EncodingService
from nyxcord.gateway.heartbeat import HeartbeatService
from nyxcord.gateway.types import (
    DEFAULT_GATEWAY_URL,
    FATAL_CLOSE_CODES,
    SESSION_INVALIDATING_CLOSE_CODES,
    CloseEvent,
    ConnectionState,
    DispatchEvent,
    GatewayConfig,
    GatewayEvent,
    GatewayOpcode,
    GatewayPayload,
    GatewaySession,
    GatewayStats,
    StateChangeEvent,
)

if TYPE_CHECKING:
    import random
    from collections.abc import Callable
    from types import TracebackType

    from nyxcord.emitter import Listener
    from nyxcord.rest.client import Rest

logger = logging.getLogger(__name__)

# Closing with 1000/1001 invalidates the session; any other code keeps it resumable
RESUMABLE_CLOSE_CODE = 4000
NORMAL_CLOSE_CODE = 1000

MAX_NONCE_BYTES = 32


def build_gateway_url(
    base_url: str,
    *,
    version: int = 10,
    encoding: str = "json",
    compress: str | None = None,
) -> str:
    """Add v / encoding / compress query parameters to a Gateway URL."""
    parts = urlsplit(base_url)
    query = dict(parse_qsl(parts.query))
    query["v"] = str(version)
    query["encoding"] = encoding
    if compress:
        query["compress"] = compress
    else:
        query.pop("compress", None)
    return urlunsplit((parts.scheme, parts.netloc, parts.path or "/", urlencode(query), ""))


def build_identify_payload(config: GatewayConfig) -> dict[str, Any]:
    """Build the op 2 Identify data."""
    payload: dict[str, Any] = {
        "token": config.token,
        "intents": config.intents,
        "properties": {
            "os": platform.system().lower() or "unknown",
            "browser": "nyxcord",
            "device": "nyxcord",
        },
        "compress": False,
        "large_threshold": config.large_threshold,
    }
    if config.shard is not None:
        payload["shard"] = list(config.shard)
    if config.presence is not None:
        payload["presence"] = config.presence
    return payload


@dataclass(frozen=True)
class _ReconnectPlan:
    """Reconnect requested by the client itself (op 7, op 9, zombie)."""

    resume: bool
    delay_ms: int
    reason: str


class GatewayConnection:
    """
    Discord Gateway client.

    Usage:
        gateway = GatewayConnection(GatewayConfig(token=token, intents=intents))
        gateway.on(GatewayEvent.DISPATCH, handle_dispatch)
        await gateway.connect()      # returns once READY
        ...
        await gateway.destroy()
    """

    def __init__(
        self,
        config: GatewayConfig,
        *,
        rest: Rest | None = None,
        session: aiohttp.ClientSession | None = None,
        throttler: SendThrottler | None = None,
        time_fn: Callable[[], int] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """
        Initialize the connection.

        Args:
            config: Gateway configuration.
            rest: Optional REST client used to resolve the URL via GET /gateway/bot.
            session: Optional externally owned aiohttp session.
            throttler: Optional outbound event throttler (120 events / 60 s by default).
            time_fn: Optional epoch-ms clock.
            rng: Optional seeded Random for heartbeat and reconnect jitter.
        """
        self._config = config
        self._rest = rest
        self._http_session = session
        self._owns_http_session = session is None
        self._time_fn = time_fn
        self._rng = rng

        self._events: EventEmitter[GatewayEvent] = EventEmitter()
        self._encoding = EncodingService(config.encoding, self._events)
        self._decompressor = (
            ZlibStreamDecompressor(config.compression) if config.compression is not None else None
        )
        self._heartbeat = HeartbeatService(
            self._send_heartbeat_frame,
            config.heartbeat,
            self._events,
            on_zombie=self._handle_zombie,
            time_fn=time_fn,
            rng=rng,
        )
        self._throttler = throttler or SendThrottler(_time_fn=time_fn)
        self._backoff_config = BackoffConfig(
            base_delay_ms=config.reconnect_delay_ms,
            max_delay_ms=max(config.max_reconnect_delay_ms, config.reconnect_delay_ms),
            max_retries=config.max_reconnect_attempts,
        )
        self._backoff_state = BackoffState()

        self._session = GatewaySession()
        self._state = ConnectionState.DISCONNECTED
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._gateway_url: str | None = None

        self._runner: asyncio.Task[None] | None = None
        self._ready: asyncio.Future[None] | None = None
        self._pending: _ReconnectPlan | None = None
        self._close_task: asyncio.Task[bool] | None = None
        self._error: GatewayError | None = None
        self._send_lock = asyncio.Lock()
        self._destroying = False

        self._connected_at = 0
        self._received_payloads = 0
        self._sent_payloads = 0

    def _now_ms(self) -> int:
        """Get current time in milliseconds."""
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def config(self) -> GatewayConfig:
        return self._config

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def events(self) -> EventEmitter[GatewayEvent]:
        return self._events

    @property
    def heartbeat(self) -> HeartbeatService:
        return self._heartbeat

    @property
    def encoding(self) -> EncodingService:
        return self._encoding

    @property
    def session(self) -> GatewaySession:
        return self._session

    @property
    def session_id(self) -> str | None:
        return self._session.session_id

    @property
    def sequence(self) -> int | None:
        return self._session.sequence

    @property
    def latency(self) -> int:
        return self._heartbeat.latency

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def stats(self) -> GatewayStats:
        metrics = self._heartbeat.metrics
        return GatewayStats(
            ping=metrics.latency,
            last_heartbeat=metrics.last_ack or None,
            session_id=self._session.session_id,
            sequence=self._session.sequence,
            reconnect_attempts=self._backoff_state.attempt,
            uptime=self._now_ms() - self._connected_at if self._connected_at else 0,
            state=self._state,
            received_payloads=self._received_payloads,
            sent_payloads=self._sent_payloads,
            missed_heartbeats=metrics.missed_heartbeats,
        )

    def on(self, event: GatewayEvent, listener: Listener) -> Listener:
        return self._events.on(event, listener)

    def once(self, event: GatewayEvent, listener: Listener) -> Listener:
        return self._events.once(event, listener)

    def off(self, event: GatewayEvent, listener: Listener) -> None:
        self._events.off(event, listener)

    def _set_state(self, state: ConnectionState) -> None:
        """Update connection state and notify listeners."""
        if self._state is state:
            return
        old_state = self._state
        self._state = state
        logger.debug(
            "Gateway state changed",
            extra={"old_state": old_state.value, "new_state": state.value},
        )
        self._events.emit(
            GatewayEvent.STATE_CHANGE, StateChangeEvent(old_state=old_state, new_state=state)
        )

    def _debug(self, message: str) -> None:
        self._events.emit(GatewayEvent.DEBUG, f"[Gateway] {message}")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Open the connection and wait until READY (or RESUMED).

        Raises:
            GatewayError: Connection is closed or already running.
            GatewayFatalError: Gateway closed with a non-recoverable code.
            GatewayReconnectError: Could not connect within max_reconnect_attempts.
        """
        if self._state is ConnectionState.CLOSED:
            msg = "Gateway connection is closed"
            raise GatewayError(msg)
        if self._runner is not None and not self._runner.done():
            msg = "Gateway connection already started"
            raise GatewayError(msg)

        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        self._error = None
        self._runner = loop.create_task(self._run())
        await self._ready

    async def wait_closed(self) -> None:
        """
        Wait until the connection reaches CLOSED.

        Raises:
            GatewayFatalError / GatewayReconnectError: The reason the connection closed.
        """
        if self._runner is not None:
            await asyncio.wait({self._runner})
        if self._error is not None:
            raise self._error

    async def destroy(self) -> None:
        """Close the socket with 1000 and release every resource. Idempotent, final."""
        self._destroying = True
        runner, self._runner = self._runner, None
        if runner is not None and not runner.done() and runner is not asyncio.current_task():
            runner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await runner

        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            await ws.close(code=NORMAL_CLOSE_CODE)

        self._heartbeat.destroy()
        self._session.clear()
        if self._decompressor is not None:
            self._decompressor.reset()
        await self._close_http_session()

        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(GatewayError("Gateway connection destroyed"))
            # Nobody may be awaiting connect() any more
            self._ready.exception()
        if self._state is not ConnectionState.CLOSED:
            self._set_state(ConnectionState.CLOSED)
            logger.info("Gateway connection destroyed")
        await self._events.drain()

    async def __aenter__(self) -> GatewayConnection:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.destroy()

    def _get_http_session(self) -> aiohttp.ClientSession:
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession()
            self._owns_http_session = True
        return self._http_session

    async def _close_http_session(self) -> None:
        session = self._http_session
        if self._owns_http_session and session is not None and not session.closed:
            await session.close()
        self._http_session = None

    async def _resolve_url(self) -> str:
        if self._session.can_resume and self._session.resume_gateway_url:
            base = self._session.resume_gateway_url
        elif self._config.url:
            base = self._config.url
        elif self._rest is not None:
            if self._gateway_url is None:
                info = await self._rest.get_gateway_bot()
                self._gateway_url = str(info["url"])
            base = self._gateway_url
        else:
            base = DEFAULT_GATEWAY_URL
        compression = self._config.compression
        return build_gateway_url(
            base,
            version=self._config.version,
            encoding=self._config.encoding.encoding,
            compress=compression.compression_type.value if compression is not None else None,
        )

    # -------------------------------------------------------------------------
    # Supervisor
    # -------------------------------------------------------------------------

    async def _run(self) -> None:
        try:
            while True:
                close_code = await self._connect_once()
                delay_ms = self._plan_next_attempt(close_code)
                if delay_ms is None:
                    self._finish(None)
                    await self._close_http_session()
                    return
                logger.info(
                    "Reconnecting to Gateway",
                    extra={
                        "delay_ms": delay_ms,
                        "attempt": self._backoff_state.attempt,
                        "resume": self._session.can_resume,
                    },
                )
                self._events.emit(GatewayEvent.RECONNECTING, self._backoff_state.attempt)
                await asyncio.sleep(delay_ms / 1000)
        except GatewayError as e:
            self._finish(e)
            await self._close_http_session()
        except Exception as e:
            logger.exception("Gateway supervisor failed")
            self._finish(GatewayError(f"Gateway connection failed: {e}"))
            await self._close_http_session()

    async def _connect_once(self) -> int | None:
        """Run one socket from connect to close; returns the close code."""
        self._set_state(ConnectionState.CONNECTING)
        if self._decompressor is not None:
            self._decompressor.reset()

        try:
            url = await self._resolve_url()
            logger.info("Connecting to Gateway", extra={"resume": self._session.can_resume})
            ws = await asyncio.wait_for(
                self._get_http_session().ws_connect(url, max_msg_size=0),
                timeout=self._config.connect_timeout_ms / 1000,
            )
        except (aiohttp.ClientError, TimeoutError, OSError, NyxcordError) as e:
            logger.warning(
                "Gateway connect failed",
                extra={"error_type": type(e).__name__, "error": str(e)},
            )
            self._events.emit(GatewayEvent.ERROR, e)
            self._set_state(ConnectionState.DISCONNECTED)
            return None

        self._ws = ws
        try:
            await self._receive_loop(ws)
        finally:
            self._heartbeat.stop()
            close_task, self._close_task = self._close_task, None
            if close_task is not None:
                await asyncio.wait({close_task})
            if not ws.closed:
                await ws.close(
                    code=NORMAL_CLOSE_CODE if self._destroying else RESUMABLE_CLOSE_CODE
                )
            self._ws = None

        self._session.disconnected_at = self._now_ms()
        self._connected_at = 0
        self._set_state(ConnectionState.DISCONNECTED)
        return ws.close_code

    async def _receive_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                frame: str | bytes = msg.data
            elif msg.type == aiohttp.WSMsgType.BINARY:
                frame = msg.data
                if self._decompressor is not None:
                    try:
                        inflated = self._decompressor.push(msg.data)
                    except CompressionError as e:
                        self._drop_frame(e)
                        continue
                    if inflated is None:
                        continue
                    frame = inflated
            elif msg.type == aiohttp.WSMsgType.ERROR:
                error = ws.exception()
                logger.error("Gateway socket error", extra={"error": str(error)})
                self._events.emit(GatewayEvent.ERROR, error)
                break
            else:
                continue

            try:
                await self._handle_frame(frame)
            except EncodingError:
                raise
            except (GatewayError, ConnectionResetError, aiohttp.ClientError) as e:
                logger.warning(
                    "Gateway send failed",
                    extra={"error_type": type(e).__name__, "error": str(e)},
                )
                self._events.emit(GatewayEvent.ERROR, e)
                break

    def _plan_next_attempt(self, close_code: int | None) -> int | None:
        """
        Decide what follows a closed socket.

        Returns:
            Delay before reconnecting in ms, or None to stop without error.

        Raises:
            GatewayFatalError: Non-recoverable close code.
            GatewayReconnectError: Reconnect attempts exhausted.
        """
        plan, self._pending = self._pending, None

        if plan is None and close_code in FATAL_CLOSE_CODES:
            logger.error("Gateway closed with fatal code", extra={"close_code": close_code})
            self._events.emit(
                GatewayEvent.CLOSE,
                CloseEvent(code=close_code, will_reconnect=False, will_resume=False),
            )
            msg = f"Gateway closed with fatal code {close_code}"
            raise GatewayFatalError(msg, close_code=close_code or 0)

        if plan is None and close_code in SESSION_INVALIDATING_CLOSE_CODES:
            logger.info("Gateway session invalidated", extra={"close_code": close_code})
            self._clear_session()

        will_reconnect = plan is not None or self._config.auto_reconnect
        self._events.emit(
            GatewayEvent.CLOSE,
            CloseEvent(
                code=close_code,
                will_reconnect=will_reconnect,
                will_resume=will_reconnect and self._session.can_resume,
            ),
        )
        if not will_reconnect:
            return None

        self._backoff_state.record_error()
        if self._backoff_state.attempt > self._config.max_reconnect_attempts:
            msg = f"Failed to reconnect after {self._config.max_reconnect_attempts} attempts"
            raise GatewayReconnectError(msg, attempts=self._config.max_reconnect_attempts)

        if plan is not None:
            logger.info(
                "Gateway reconnect requested",
                extra={"reason": plan.reason, "resume": plan.resume},
            )
            return plan.delay_ms
        return compute_backoff_delay(self._backoff_config, self._backoff_state, rng=self._rng)

    def _finish(self, error: GatewayError | None) -> None:
        self._error = error
        if error is not None:
            logger.error(
                "Gateway connection closed",
                extra={"error_type": type(error).__name__, "error": str(error)},
            )
            self._events.emit(GatewayEvent.ERROR, error)
        self._heartbeat.stop()
        self._set_state(ConnectionState.CLOSED)
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(error or GatewayError("Gateway closed before READY"))

    def _clear_session(self) -> None:
        self._session.clear()
        self._heartbeat.reset_sequence()

    def _request_reconnect(self, *, resume: bool, delay_ms: int, reason: str) -> None:
        """Close the current socket so the supervisor reconnects according to plan."""
        ws = self._ws
        if ws is None or ws.closed or self._pending is not None:
            return
        self._pending = _ReconnectPlan(resume=resume, delay_ms=delay_ms, reason=reason)
        code = RESUMABLE_CLOSE_CODE if resume else NORMAL_CLOSE_CODE
        self._close_task = asyncio.get_running_loop().create_task(ws.close(code=code))

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    def _drop_frame(self, error: Exception) -> None:
        logger.warning(
            "Dropping malformed Gateway frame",
            extra={"error_type": type(error).__name__, "error": str(error)},
        )
        self._debug(f"Dropped malformed frame: {error}")

    async def _handle_frame(self, frame: str | bytes) -> None:
        try:
            raw = self._encoding.decode(frame)
            if self._config.validate_payloads:
                payload = GatewayPayload.model_validate(raw)
            else:
                payload = GatewayPayload.model_construct(
                    op=raw.get("op"), d=raw.get("d"), s=raw.get("s"), t=raw.get("t")
                )
        except (EncodingError, pydantic.ValidationError) as e:
            self._drop_frame(e)
            return

        self._received_payloads += 1
        await self._handle_payload(payload)

    async def _handle_payload(self, payload: GatewayPayload) -> None:
        op = payload.op
        if op == GatewayOpcode.DISPATCH:
            self._handle_dispatch(payload)
        elif op == GatewayOpcode.HEARTBEAT:
            await self._send_heartbeat_frame(self._heartbeat.sequence)
        elif op == GatewayOpcode.HEARTBEAT_ACK:
            self._heartbeat.ack_heartbeat()
            self._events.emit(GatewayEvent.HEARTBEAT_ACK, self._heartbeat.latency)
        elif op == GatewayOpcode.HELLO:
            await self._handle_hello(payload.d)
        elif op == GatewayOpcode.RECONNECT:
            logger.info("Gateway requested reconnect")
            self._request_reconnect(resume=True, delay_ms=0, reason="reconnect requested")
        elif op == GatewayOpcode.INVALID_SESSION:
            self._handle_invalid_session(resumable=bool(payload.d))
        else:
            self._debug(f"Unhandled opcode {op}")

    async def _handle_hello(self, data: Any) -> None:
        interval = data.get("heartbeat_interval") if isinstance(data, dict) else None
        if not isinstance(interval, int) or interval <= 0:
            self._drop_frame(EncodingError(f"Invalid Hello payload: {data!r}"))
            return

        self._heartbeat.start(interval)
        self._events.emit(GatewayEvent.HELLO, interval)

        if self._session.can_resume and not self._session_expired():
            self._set_state(ConnectionState.RESUMING)
            await self._send_resume()
        else:
            self._clear_session()
            self._set_state(ConnectionState.IDENTIFYING)
            await self._send_identify()

    def _session_expired(self) -> bool:
        disconnected_at = self._session.disconnected_at
        if disconnected_at is None:
            return False
        return self._now_ms() - disconnected_at > self._config.session_timeout_ms

    def _handle_dispatch(self, payload: GatewayPayload) -> None:
        if payload.s is not None:
            self._session.sequence = payload.s
            try:
                self._heartbeat.update_sequence(payload.s)
            except ValidationError as e:
                logger.warning("Sequence out of range", extra={"sequence": payload.s})
                self._debug(str(e))

        event_name = payload.t or ""
        if event_name == "READY":
            data = payload.d if isinstance(payload.d, dict) else {}
            self._session.session_id = data.get("session_id")
            self._session.resume_gateway_url = data.get("resume_gateway_url")
            self._mark_connected()
            logger.info("Gateway ready", extra={"shard": self._config.shard})
            self._events.emit(GatewayEvent.READY, payload.d)
        elif event_name == "RESUMED":
            self._mark_connected()
            logger.info("Gateway session resumed", extra={"sequence": self._session.sequence})
            self._events.emit(GatewayEvent.RESUMED, payload.d)

        self._events.emit(
            GatewayEvent.DISPATCH, DispatchEvent(t=event_name, d=payload.d, s=payload.s)
        )

    def _mark_connected(self) -> None:
        self._connected_at = self._now_ms()
        self._session.disconnected_at = None
        self._backoff_state.reset()
        self._set_state(ConnectionState.CONNECTED)
        if self._ready is not None and not self._ready.done():
            self._ready.set_result(None)

    def _handle_invalid_session(self, *, resumable: bool) -> None:
        self._events.emit(GatewayEvent.INVALID_SESSION, resumable)
        if resumable and self._session.can_resume:
            logger.info("Gateway session invalid, resuming")
            self._request_reconnect(resume=True, delay_ms=0, reason="invalid session (resumable)")
            return

        logger.info("Gateway session invalid, identifying")
        self._clear_session()
        self._request_reconnect(
            resume=False,
            delay_ms=invalid_session_delay_ms(self._rng),
            reason="invalid session",
        )

    def _handle_zombie(self) -> None:
        logger.warning("Closing zombie Gateway connection")
        self._request_reconnect(resume=True, delay_ms=0, reason="zombie connection")

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    async def send(self, op: GatewayOpcode | int, data: Any) -> None:
        """
        Encode and send a payload.

        Non-heartbeat payloads wait for the outbound event budget.

        Raises:
            GatewayError: Socket is not open.
            ValidationError: Payload exceeds max_payload_size.
            EncodingError: Payload cannot be encoded.
        """
        frame = self._encoding.encode({"op": int(op), "d": data})
        if op != GatewayOpcode.HEARTBEAT:
            async with self._send_lock:
                while not self._throttler.consume():
                    wait_ms = self._throttler.get_wait_time_ms()
                    logger.debug("Gateway send throttled", extra={"wait_ms": wait_ms})
                    await asyncio.sleep(wait_ms / 1000)
        await self._write(frame)

    async def _write(self, frame: str | bytes) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            msg = "Gateway socket is not open"
            raise GatewayError(msg)
        if isinstance(frame, str):
            await ws.send_str(frame)
        else:
            await ws.send_bytes(frame)
        self._sent_payloads += 1

    async def _send_heartbeat_frame(self, sequence: int | None) -> None:
        try:
            await self.send(GatewayOpcode.HEARTBEAT, sequence)
        except (GatewayError, ConnectionResetError, aiohttp.ClientError) as e:
            # The receive loop observes the close and reconnects
            logger.debug("Heartbeat not sent", extra={"error": str(e)})

    async def _send_identify(self) -> None:
        logger.info("Identifying", extra={"intents": self._config.intents})
        await self.send(GatewayOpcode.IDENTIFY, build_identify_payload(self._config))

    async def _send_resume(self) -> None:
        logger.info("Resuming session", extra={"sequence": self._session.sequence})
        await self.send(
            GatewayOpcode.RESUME,
            {
                "token": self._config.token,
                "session_id": self._session.session_id,
                "seq": self._session.sequence,
            },
        )

    def _require_connected(self) -> None:
        if self._state is not ConnectionState.CONNECTED:
            msg = f"Gateway is not connected (state {self._state.value})"
            raise GatewayError(msg)

    async def update_presence(
        self,
        *,
        status: str = "online",
        activities: list[dict[str, Any]] | None = None,
        afk: bool = False,
        since: int | None = None,
    ) -> None:
        """Send op 3 Presence Update."""
        if status not in ("online", "dnd", "idle", "invisible", "offline"):
            msg = f"Invalid presence status: {status!r}"
            raise ValidationError(msg)
        self._require_connected()
        await self.send(
            GatewayOpcode.PRESENCE_UPDATE,
            {"since": since, "activities": activities or [], "status": status, "afk": afk},
        )

    async def update_voice_state(
        self,
        guild_id: str,
        channel_id: str | None,
        *,
        self_mute: bool = False,
        self_deaf: bool = False,
    ) -> None:
        """Send op 4 Voice State Update (channel_id None leaves the channel)."""
        self._require_connected()
        await self.send(
            GatewayOpcode.VOICE_STATE_UPDATE,
            {
                "guild_id": guild_id,
                "channel_id": channel_id,
                "self_mute": self_mute,
                "self_deaf": self_deaf,
            },
        )

    async def request_guild_members(
        self,
        guild_id: str,
        *,
        query: str | None = None,
        limit: int = 0,
        presences: bool = False,
        user_ids: list[str] | None = None,
        nonce: str | None = None,
    ) -> None:
        """Send op 8 Request Guild Members; members arrive as GUILD_MEMBERS_CHUNK dispatches."""
        if (query is None) == (user_ids is None):
            msg = "Exactly one of query or user_ids is required"
            raise ValidationError(msg)
        if user_ids is not None and len(user_ids) > 100:
            msg = f"user_ids accepts at most 100 ids, got {len(user_ids)}"
            raise ValidationError(msg)
        if nonce is not None and len(nonce.encode("utf-8")) > MAX_NONCE_BYTES:
            msg = f"nonce must be at most {MAX_NONCE_BYTES} bytes"
            raise ValidationError(msg)
        self._require_connected()

        data: dict[str, Any] = {"guild_id": guild_id, "limit": limit, "presences": presences}
        if query is not None:
            data["query"] = query
        if user_ids is not None:
            data["user_ids"] = user_ids
        if nonce is not None:
            data["nonce"] = nonce
        await self.send(GatewayOpcode.REQUEST_GUILD_MEMBERS, data)

    def get_status(self) -> dict[str, Any]:
        """Get connection status for observability."""
        stats = self.stats
        status: dict[str, Any] = {
            "state": stats.state.value,
            "ping_ms": stats.ping,
            "sequence": stats.sequence,
            "reconnect_attempts": stats.reconnect_attempts,
            "received_payloads": stats.received_payloads,
            "sent_payloads": stats.sent_payloads,
            "missed_heartbeats": stats.missed_heartbeats,
            "throttler": self._throttler.get_status(),
        }
        if self._decompressor is not None:
            status["compression"] = self._decompressor.get_stats()
        return status
