"""
Rate limit manager for the Discord REST API.

Discord limits:
- Per-route buckets identified by the x-ratelimit-bucket header
- Buckets are scoped per major parameter (guild, channel, webhook)
- Some route families share one bucket regardless of parameters
- On 429: wait retry-after, escalate for routes that keep getting limited

The manager keeps local bucket state from response headers and fails fast
before a request that would certainly be rejected is sent.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import re
import time
from collections.abc import Mapping
from typing import TYPE_CHECKING

from nyxcord.errors import RateLimitError
from nyxcord.rest.types import (
    RateLimitAttempt,
    RateLimitBucket,
    RateLimitConfig,
    RateLimitExpireEvent,
    RateLimitHitEvent,
    RateLimitScope,
    RateLimitStatus,
    RateLimitUpdateEvent,
    RestEvent,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from nyxcord.emitter import EventEmitter

logger = logging.getLogger(__name__)

HEADER_LIMIT = "x-ratelimit-limit"
HEADER_REMAINING = "x-ratelimit-remaining"
HEADER_RESET = "x-ratelimit-reset"
HEADER_RESET_AFTER = "x-ratelimit-reset-after"
HEADER_BUCKET = "x-ratelimit-bucket"
HEADER_SCOPE = "x-ratelimit-scope"
HEADER_GLOBAL = "x-ratelimit-global"
HEADER_RETRY_AFTER = "retry-after"

WEBHOOK_ROUTE = re.compile(r"^/webhooks/(\d+)/([A-Za-z0-9\-_]+)")
EXEMPT_PREFIXES: tuple[str, ...] = ("/interactions", "/webhooks")
MAJOR_PARAMETERS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"^/guilds/(\d+)"), "guild_id"),
    (re.compile(r"^/channels/(\d+)"), "channel_id"),
    (re.compile(r"^/webhooks/(\d+)"), "webhook_id"),
)


def _header_float(headers: Mapping[str, str], name: str) -> float | None:
    raw = headers.get(name)
    if raw is None or raw == "":
        return None
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Unparseable rate limit header", extra={"header": name, "value": raw})
        return None
    return value if math.isfinite(value) else None


def _parse_scope(headers: Mapping[str, str]) -> RateLimitScope:
    scope = headers.get(HEADER_SCOPE, "user").lower()
    if scope in ("user", "global", "shared"):
        return scope  # type: ignore[return-value]
    return "user"


class RateLimitManager:
    """
    Tracks Discord rate limit buckets from response headers.

    State:
    - buckets: bucket hash -> RateLimitBucket
    - route index: route key -> bucket hash
    - shared index: shared identifier -> set of bucket hashes
    - attempts: route key -> consecutive 429 record

    All state is owned here; callers interact only through the methods.
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        emitter: EventEmitter[RestEvent] | None = None,
        *,
        time_fn: Callable[[], int] | None = None,
    ) -> None:
        """
        Initialize the rate limit manager.

        Args:
            config: Rate limit configuration.
            emitter: Optional event emitter for rate limit events.
            time_fn: Optional epoch-ms clock for deterministic tests.
        """
        self._config = config or RateLimitConfig()
        self._emitter = emitter
        self._time_fn = time_fn

        self._shared_patterns: tuple[tuple[re.Pattern[str], str], ...] = tuple(
            (re.compile(pattern), identifier) for pattern, identifier in self._config.shared_buckets
        )

        self._buckets: dict[str, RateLimitBucket] = {}
        self._route_buckets: dict[str, str] = {}
        self._shared_buckets: dict[str, set[str]] = {}
        self._attempts: dict[str, RateLimitAttempt] = {}

        self._cleanup_task: asyncio.Task[None] | None = None
        self._destroyed = False

    def _now_ms(self) -> int:
        """Get current time in milliseconds."""
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    @property
    def bucket_count(self) -> int:
        return len(self._buckets)

    @property
    def is_running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Schedule the periodic cleanup sweep on the running loop."""
        if self._destroyed or self.is_running:
            return
        self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def _cleanup_loop(self) -> None:
        interval_s = self._config.cleanup_interval_ms / 1000
        while True:
            await asyncio.sleep(interval_s)
            self.cleanup_expired()

    async def destroy(self) -> None:
        """Cancel the sweep and drop all state. Safe to call twice."""
        self._destroyed = True
        if self._cleanup_task is not None and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._cleanup_task
        self._cleanup_task = None
        self._buckets.clear()
        self._route_buckets.clear()
        self._shared_buckets.clear()
        self._attempts.clear()

    # -------------------------------------------------------------------------
    # Route classification
    # -------------------------------------------------------------------------

    def is_exempt(self, path: str) -> bool:
        return path.startswith(EXEMPT_PREFIXES)

    def get_shared_route(self, path: str) -> str | None:
        for pattern, identifier in self._shared_patterns:
            if pattern.search(path):
                return identifier
        return None

    def get_route_key(self, method: str, path: str) -> str:
        """
        Map a request to the key its bucket is indexed under.

        Examples:
            ("POST", "/webhooks/1/abc")         -> "webhook:1:abc:POST"
            ("GET", "/guilds/1/emojis")         -> "shared:emoji"
            ("GET", "/channels/9/messages/10")  -> "GET:/channels/{channel_id}/messages/10"
        """
        webhook = WEBHOOK_ROUTE.match(path)
        if webhook:
            return f"webhook:{webhook.group(1)}:{webhook.group(2)}:{method}"

        shared = self.get_shared_route(path)
        if shared is not None:
            return f"shared:{shared}"

        return f"{method}:{self._normalize_path(path)}"

    def _normalize_path(self, path: str) -> str:
        normalized = path
        for pattern, param in MAJOR_PARAMETERS:
            match = pattern.match(path)
            if match:
                normalized = normalized.replace(match.group(1), f"{{{param}}}", 1)
        return normalized

    def _get_bucket(self, path: str, method: str) -> RateLimitBucket | None:
        bucket_hash = self._route_buckets.get(self.get_route_key(method, path))
        if bucket_hash is None:
            return None
        return self._buckets.get(bucket_hash)

    def get_bucket(self, bucket_hash: str) -> RateLimitBucket | None:
        return self._buckets.get(bucket_hash)

    def get_attempt(self, route_key: str) -> RateLimitAttempt | None:
        return self._attempts.get(route_key)

    def get_shared_hashes(self, identifier: str) -> frozenset[str]:
        return frozenset(self._shared_buckets.get(identifier, ()))

    # -------------------------------------------------------------------------
    # Pre-flight and post-response
    # -------------------------------------------------------------------------

    def check_rate_limit(self, path: str, method: str) -> None:
        """
        Fail fast if the request would exceed a known bucket.

        Raises:
            RateLimitError: With retry_after_ms until the bucket frees up.
        """
        if self.is_exempt(path):
            return

        bucket = self._get_bucket(path, method)
        if bucket is None:
            return

        now_ms = self._now_ms()
        time_until_reset = bucket.reset - now_ms

        if bucket.remaining <= 0 and time_until_reset > 0:
            raise RateLimitError(
                f"Bucket {bucket.hash} exhausted for {method} {path}",
                method=method,
                path=path,
                retry_after_ms=time_until_reset,
                scope=bucket.scope,
                bucket_hash=bucket.hash,
            )

        # Past reset the bucket is stale and never blocks
        margin = self._config.safety_margin_ms
        if bucket.remaining == 1 and 0 < time_until_reset < margin:
            raise RateLimitError(
                f"Bucket {bucket.hash} within safety margin for {method} {path}",
                method=method,
                path=path,
                retry_after_ms=margin - time_until_reset,
                scope=bucket.scope,
                bucket_hash=bucket.hash,
            )

    def update_rate_limit(
        self,
        path: str,
        method: str,
        headers: Mapping[str, str],
        status_code: int,
    ) -> None:
        """
        Apply response headers to local bucket state.

        Args:
            path: Request path.
            method: HTTP method.
            headers: Response headers with lower-cased names.
            status_code: HTTP status code.

        Raises:
            RateLimitError: On 429, with the escalated retry delay.
        """
        route_key = self.get_route_key(method, path)

        if status_code < 400:
            self._attempts.pop(route_key, None)

        self._update_bucket(route_key, path, headers)

        if status_code == 429:
            self._handle_rate_limited(route_key, path, method, headers)

    def _handle_rate_limited(
        self,
        route_key: str,
        path: str,
        method: str,
        headers: Mapping[str, str],
    ) -> None:
        retry_after_s = _header_float(headers, HEADER_RETRY_AFTER)
        if retry_after_s is None:
            retry_after_s = _header_float(headers, HEADER_RESET_AFTER)
        retry_after_ms = (
            round(retry_after_s * 1000)
            if retry_after_s is not None
            else self._config.default_retry_after_ms
        )
        scope = _parse_scope(headers)
        is_global = headers.get(HEADER_GLOBAL, "").lower() == "true"

        now_ms = self._now_ms()
        previous = self._attempts.get(route_key)
        attempt = RateLimitAttempt(
            count=(previous.count if previous else 0) + 1,
            last_attempt=now_ms,
            next_reset=now_ms + retry_after_ms,
            scope=scope,
        )
        self._attempts[route_key] = attempt

        multiplier = min(2 ** (attempt.count - 1), self._config.max_backoff_multiplier)
        adjusted_ms = retry_after_ms * multiplier
        bucket_hash = headers.get(HEADER_BUCKET) or None

        logger.warning(
            "Rate limited",
            extra={
                "route_key": route_key,
                "retry_after_ms": adjusted_ms,
                "scope": scope,
                "global": is_global,
                "attempts": attempt.count,
            },
        )
        if self._emitter is not None:
            self._emitter.emit(
                RestEvent.RATE_LIMIT_HIT,
                RateLimitHitEvent(
                    route_key=route_key,
                    method=method,
                    path=path,
                    retry_after_ms=adjusted_ms,
                    scope=scope,
                    global_=is_global,
                    attempts=attempt.count,
                    bucket_hash=bucket_hash,
                    timestamp_ms=now_ms,
                ),
            )

        raise RateLimitError(
            f"Rate limited on {method} {path} (attempt {attempt.count})",
            method=method,
            path=path,
            retry_after_ms=adjusted_ms,
            scope=scope,
            bucket_hash=bucket_hash,
            global_=is_global,
            attempts=attempt.count,
        )

    def _update_bucket(self, route_key: str, path: str, headers: Mapping[str, str]) -> None:
        bucket_hash = headers.get(HEADER_BUCKET)
        if not bucket_hash:
            return

        limit = _header_float(headers, HEADER_LIMIT)
        remaining = _header_float(headers, HEADER_REMAINING)
        reset = _header_float(headers, HEADER_RESET)
        reset_after = _header_float(headers, HEADER_RESET_AFTER)

        now_ms = self._now_ms()
        reset_after_ms = round(reset_after * 1000) if reset_after is not None else 0
        if reset is not None:
            reset_ms = round(reset * 1000)
        else:
            reset_ms = now_ms + reset_after_ms

        bucket = RateLimitBucket(
            hash=bucket_hash,
            limit=int(limit) if limit is not None else 0,
            remaining=max(0, int(remaining)) if remaining is not None else 0,
            reset=reset_ms,
            reset_after=reset_after_ms,
            scope=_parse_scope(headers),
            shared_route=self.get_shared_route(path),
        )

        self._buckets[bucket_hash] = bucket
        self._route_buckets[route_key] = bucket_hash
        if bucket.shared_route is not None:
            self._shared_buckets.setdefault(bucket.shared_route, set()).add(bucket_hash)

        logger.debug(
            "Rate limit bucket updated",
            extra={
                "route_key": route_key,
                "bucket": bucket_hash,
                "remaining": bucket.remaining,
                "limit": bucket.limit,
                "reset_after_ms": reset_after_ms,
            },
        )
        if self._emitter is not None:
            self._emitter.emit(
                RestEvent.RATE_LIMIT_UPDATE,
                RateLimitUpdateEvent(
                    route_key=route_key,
                    bucket_hash=bucket_hash,
                    limit=bucket.limit,
                    remaining=bucket.remaining,
                    reset_after_ms=reset_after_ms,
                    scope=bucket.scope,
                    timestamp_ms=now_ms,
                ),
            )

    # -------------------------------------------------------------------------
    # Status and cleanup
    # -------------------------------------------------------------------------

    def get_rate_limit_status(self, path: str, method: str) -> RateLimitStatus:
        """Current local view of the bucket for a route."""
        bucket = self._get_bucket(path, method)
        if bucket is None:
            return RateLimitStatus(limited=False, remaining=math.inf, reset_after=0, scope="user")

        now_ms = self._now_ms()
        return RateLimitStatus(
            limited=bucket.remaining <= 0 and bucket.reset > now_ms,
            remaining=bucket.remaining,
            reset_after=max(0, bucket.reset - now_ms),
            scope=bucket.scope,
        )

    def cleanup_expired(self) -> int:
        """
        Drop buckets, index entries and attempt records past their reset.

        Returns:
            Number of buckets removed.
        """
        now_ms = self._now_ms()

        expired = [h for h, bucket in self._buckets.items() if bucket.is_expired(now_ms)]
        for bucket_hash in expired:
            del self._buckets[bucket_hash]
            if self._emitter is not None:
                self._emitter.emit(
                    RestEvent.RATE_LIMIT_EXPIRE,
                    RateLimitExpireEvent(bucket_hash=bucket_hash, timestamp_ms=now_ms),
                )

        self._route_buckets = {
            route: h for route, h in self._route_buckets.items() if h in self._buckets
        }

        for identifier in list(self._shared_buckets):
            live = {h for h in self._shared_buckets[identifier] if h in self._buckets}
            if live:
                self._shared_buckets[identifier] = live
            else:
                del self._shared_buckets[identifier]

        self._attempts = {
            route: attempt
            for route, attempt in self._attempts.items()
            if attempt.next_reset >= now_ms
        }

        if expired:
            logger.debug("Expired rate limit buckets removed", extra={"count": len(expired)})
        return len(expired)

    def get_status(self) -> dict[str, int | bool]:
        """Get current manager status for observability."""
        return {
            "buckets": len(self._buckets),
            "routes": len(self._route_buckets),
            "shared_routes": len(self._shared_buckets),
            "limited_routes": len(self._attempts),
            "sweeping": self.is_running,
        }
