"""
Heartbeat supervision for a Gateway connection.

The service sends op 1 on the Hello interval and tracks acknowledgements.
A beat that comes due while the previous one is still unacknowledged counts
as missed; after max_missed_heartbeats consecutive misses the connection is
considered a zombie and the owner's zombie callback is invoked.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import time
from collections import deque
from typing import TYPE_CHECKING

from nyxcord.errors import ValidationError
from nyxcord.gateway.types import GatewayEvent, HeartbeatConfig, HeartbeatMetrics, ZombieEvent

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from nyxcord.emitter import EventEmitter

logger = logging.getLogger(__name__)

LATENCY_HISTORY_SIZE = 100


class HeartbeatService:
    """
    Periodic heartbeat sender with zombie detection.

    Usage:
        heartbeat = HeartbeatService(send=connection.send_heartbeat_frame)
        heartbeat.start(hello_interval_ms)
        ...
        heartbeat.ack_heartbeat()   # on op 11
        heartbeat.stop()
    """

    def __init__(
        self,
        send: Callable[[int | None], Awaitable[None]],
        config: HeartbeatConfig | None = None,
        emitter: EventEmitter[GatewayEvent] | None = None,
        *,
        on_zombie: Callable[[], None] | None = None,
        time_fn: Callable[[], int] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """
        Initialize the heartbeat service.

        Args:
            send: Coroutine function sending op 1 with the given sequence.
            config: Heartbeat configuration.
            emitter: Optional event emitter for WARN / DEBUG / ZOMBIE events.
            on_zombie: Called once the missed-beat threshold is reached.
            time_fn: Optional epoch-ms clock.
            rng: Optional seeded Random for the first-beat jitter.
        """
        self._send = send
        self._config = config or HeartbeatConfig()
        self._emitter = emitter
        self._on_zombie = on_zombie
        self._time_fn = time_fn
        self._rng = rng

        self._task: asyncio.Task[None] | None = None
        self._interval_ms = 0
        self._reset_metrics()

    def _now_ms(self) -> int:
        """Get current time in milliseconds."""
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    def _reset_metrics(self) -> None:
        self._latency = 0
        self._last_ack = 0
        self._last_send = 0
        self._missed = 0
        self._sequence: int | None = None
        self._total_beats = 0
        self._is_acked = True
        self._latency_history: deque[int] = deque(maxlen=LATENCY_HISTORY_SIZE)
        self._start_time = self._now_ms()

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def config(self) -> HeartbeatConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def interval_ms(self) -> int:
        return self._interval_ms

    @property
    def sequence(self) -> int | None:
        return self._sequence

    @property
    def latency(self) -> int:
        return self._latency

    @property
    def missed_heartbeats(self) -> int:
        return self._missed

    @property
    def metrics(self) -> HeartbeatMetrics:
        history = self._latency_history
        average = round(sum(history) / len(history)) if history else 0
        return HeartbeatMetrics(
            latency=self._latency,
            last_ack=self._last_ack,
            last_send=self._last_send,
            sequence=self._sequence,
            missed_heartbeats=self._missed,
            total_beats=self._total_beats,
            uptime=self._now_ms() - self._start_time,
            average_latency=average,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self, interval_ms: int) -> None:
        """
        Start beating every interval_ms, replacing any running loop.

        Raises:
            ValidationError: interval_ms is not positive.
        """
        if interval_ms <= 0:
            msg = f"Cannot start heartbeat with invalid interval: {interval_ms}"
            raise ValidationError(msg)

        self.stop()
        self._interval_ms = interval_ms
        self._is_acked = True
        self._missed = 0

        initial_delay_ms = 0
        if self._config.use_jitter:
            source = self._rng if self._rng is not None else random
            jitter = source.uniform(self._config.min_jitter, self._config.max_jitter)
            initial_delay_ms = int(interval_ms * jitter)

        self._debug(f"Starting: interval {interval_ms}ms, initial delay {initial_delay_ms}ms")
        self._task = asyncio.get_running_loop().create_task(
            self._run(initial_delay_ms, interval_ms)
        )

    async def _run(self, initial_delay_ms: int, interval_ms: int) -> None:
        await asyncio.sleep(initial_delay_ms / 1000)
        while True:
            await self.send_heartbeat()
            await asyncio.sleep(interval_ms / 1000)

    def stop(self) -> None:
        """Stop the beat loop. Idempotent."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            self._debug("Stopped")

    async def wait_stopped(self) -> None:
        """Stop and wait for the loop task to finish."""
        task = self._task
        self.stop()
        if task is not None and task is not asyncio.current_task():
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def destroy(self) -> None:
        """Stop and reset every metric. Idempotent."""
        self.stop()
        self._interval_ms = 0
        self._reset_metrics()
        self._debug("Destroyed")

    # -------------------------------------------------------------------------
    # Beats
    # -------------------------------------------------------------------------

    def update_sequence(self, sequence: int) -> None:
        """
        Track the last dispatch sequence.

        Raises:
            ValidationError: sequence outside the configured range.
        """
        if not self._config.min_sequence <= sequence <= self._config.max_sequence:
            msg = f"Invalid sequence number: {sequence}"
            raise ValidationError(msg)
        self._sequence = sequence

    def reset_sequence(self) -> None:
        self._sequence = None

    async def send_heartbeat(self) -> None:
        """Send one beat, or count a miss if the previous beat is unacknowledged."""
        self._total_beats += 1

        if not self._is_acked:
            self._handle_missed_heartbeat()
            return

        self._is_acked = False
        self._last_send = self._now_ms()
        self._emit(GatewayEvent.HEARTBEAT_SENT, self._sequence)
        await self._send(self._sequence)

    def ack_heartbeat(self) -> None:
        """Record op 11 from the Gateway."""
        now = self._now_ms()
        self._is_acked = True
        self._last_ack = now
        self._missed = 0

        if self._config.monitor_latency and self._last_send:
            self._latency = max(0, now - self._last_send)
            self._latency_history.append(self._latency)
            if self._latency > self._config.max_latency_ms:
                logger.warning(
                    "High heartbeat latency",
                    extra={"latency_ms": self._latency, "max_latency_ms": self._config.max_latency_ms},
                )
                self._emit(
                    GatewayEvent.WARN,
                    f"[Gateway:Heartbeat] High latency detected: {self._latency}ms",
                )

    def _handle_missed_heartbeat(self) -> None:
        self._missed += 1
        self._debug(f"Missed beat: {self._missed}/{self._config.max_missed_heartbeats}")

        if self._missed < self._config.max_missed_heartbeats:
            return

        logger.warning(
            "Zombie connection detected",
            extra={"missed_heartbeats": self._missed, "last_ack": self._last_ack},
        )
        self._emit(GatewayEvent.WARN, "[Gateway:Heartbeat] Zombie connection detected")
        self._emit(
            GatewayEvent.ZOMBIE,
            ZombieEvent(missed_heartbeats=self._missed, last_ack=self._last_ack),
        )
        if self._config.reset_on_zombie:
            self.destroy()
        if self._on_zombie is not None:
            self._on_zombie()

    def _emit(self, event: GatewayEvent, payload: object) -> None:
        if self._emitter is not None:
            self._emitter.emit(event, payload)

    def _debug(self, message: str) -> None:
        logger.debug(message)
        self._emit(GatewayEvent.DEBUG, f"[Gateway:Heartbeat] {message}")
