"""
Tests for the Discord rate limit manager.

Covers:
- Pre-flight checks against exhausted buckets and the safety margin
- Bucket updates from response headers
- 429 handling with escalating backoff
- Route key normalization (major parameters, shared buckets, webhooks)
- Expired bucket cleanup
"""

from __future__ import annotations

import asyncio

import pytest

from nyxcord.emitter import EventEmitter
from nyxcord.errors import RateLimitError
from nyxcord.rest.rate_limit import RateLimitManager
from nyxcord.rest.types import RateLimitConfig, RateLimitHitEvent, RestEvent

NOW_MS = 1_700_000_000_000


class FakeClock:
    """Deterministic epoch-ms clock."""

    def __init__(self, now_ms: int = NOW_MS) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


def bucket_headers(
    *,
    bucket: str = "abc",
    limit: int = 5,
    remaining: int = 4,
    reset_ms: int | None = None,
    reset_after_s: float = 10.0,
) -> dict[str, str]:
    reset = reset_ms if reset_ms is not None else NOW_MS + int(reset_after_s * 1000)
    return {
        "x-ratelimit-bucket": bucket,
        "x-ratelimit-limit": str(limit),
        "x-ratelimit-remaining": str(remaining),
        "x-ratelimit-reset": f"{reset / 1000:.3f}",
        "x-ratelimit-reset-after": str(reset_after_s),
    }


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def manager(clock: FakeClock) -> RateLimitManager:
    return RateLimitManager(RateLimitConfig(safety_margin_ms=200), time_fn=clock)


class TestPreflightCheck:
    """Tests for check_rate_limit."""

    def test_unknown_route_passes(self, manager: RateLimitManager) -> None:
        """No bucket known yet: request goes through."""
        manager.check_rate_limit("/users/@me", "GET")

    def test_bucket_with_remaining_passes(self, manager: RateLimitManager) -> None:
        """A 200 with remaining=4 leaves the route usable."""
        manager.update_rate_limit("/guilds/1/channels", "GET", bucket_headers(), 200)

        manager.check_rate_limit("/guilds/1/channels", "GET")

    def test_safety_margin_blocks_last_request(self, manager: RateLimitManager) -> None:
        """remaining=1 and reset in 50ms with a 200ms margin: retry after ~150ms."""
        headers = bucket_headers(remaining=1, reset_ms=NOW_MS + 50, reset_after_s=0.05)
        manager.update_rate_limit("/guilds/1/channels", "GET", headers, 200)

        with pytest.raises(RateLimitError) as exc_info:
            manager.check_rate_limit("/guilds/1/channels", "GET")

        assert exc_info.value.retry_after_ms == 150
        assert exc_info.value.bucket_hash == "abc"

    def test_exhausted_bucket_blocks_until_reset(
        self, manager: RateLimitManager, clock: FakeClock
    ) -> None:
        """remaining=0 with reset in the future fails fast."""
        headers = bucket_headers(remaining=0, reset_ms=NOW_MS + 3000, reset_after_s=3)
        manager.update_rate_limit("/channels/9/messages", "POST", headers, 200)

        with pytest.raises(RateLimitError) as exc_info:
            manager.check_rate_limit("/channels/9/messages", "POST")
        assert exc_info.value.retry_after_ms == 3000

        clock.advance(3001)
        manager.check_rate_limit("/channels/9/messages", "POST")

    def test_remaining_above_one_never_blocks(self, manager: RateLimitManager) -> None:
        """remaining > 1 passes even when reset is inside the margin."""
        headers = bucket_headers(remaining=2, reset_ms=NOW_MS + 10, reset_after_s=0.01)
        manager.update_rate_limit("/guilds/1/roles", "GET", headers, 200)

        manager.check_rate_limit("/guilds/1/roles", "GET")

    def test_stale_bucket_never_blocks(
        self, manager: RateLimitManager, clock: FakeClock
    ) -> None:
        """remaining=1 with reset already past: the bucket is stale and the request passes."""
        headers = bucket_headers(remaining=1, reset_ms=NOW_MS + 1000, reset_after_s=1)
        manager.update_rate_limit("/guilds/1/roles", "GET", headers, 200)

        clock.advance(5000)

        manager.check_rate_limit("/guilds/1/roles", "GET")

    def test_reset_exactly_now_passes(self, manager: RateLimitManager) -> None:
        headers = bucket_headers(remaining=1, reset_ms=NOW_MS, reset_after_s=0)
        manager.update_rate_limit("/guilds/1/roles", "GET", headers, 200)

        manager.check_rate_limit("/guilds/1/roles", "GET")

    def test_exempt_routes_skip_checks(self, manager: RateLimitManager) -> None:
        """Interaction callbacks are never blocked locally."""
        headers = bucket_headers(remaining=0, reset_ms=NOW_MS + 5000, reset_after_s=5)
        manager.update_rate_limit("/interactions/1/tok/callback", "POST", headers, 200)

        manager.check_rate_limit("/interactions/1/tok/callback", "POST")


class TestBucketUpdates:
    """Tests for header-driven bucket state."""

    def test_remaining_matches_latest_header(self, manager: RateLimitManager) -> None:
        """remaining equals the last header value exactly."""
        for remaining in (4, 3, 7, 0):
            manager.update_rate_limit(
                "/guilds/1/channels", "GET", bucket_headers(remaining=remaining), 200
            )
            bucket = manager.get_bucket("abc")
            assert bucket is not None
            assert bucket.remaining == remaining

    def test_reset_follows_latest_response(self, manager: RateLimitManager) -> None:
        """reset tracks the newest value applied."""
        manager.update_rate_limit(
            "/guilds/1/channels", "GET", bucket_headers(reset_ms=NOW_MS + 1000), 200
        )
        manager.update_rate_limit(
            "/guilds/1/channels", "GET", bucket_headers(reset_ms=NOW_MS + 9000), 200
        )

        bucket = manager.get_bucket("abc")
        assert bucket is not None
        assert bucket.reset == NOW_MS + 9000

    def test_missing_bucket_header_ignored(self, manager: RateLimitManager) -> None:
        """Responses without x-ratelimit-bucket leave state untouched."""
        manager.update_rate_limit("/users/@me", "GET", {"x-ratelimit-remaining": "1"}, 200)

        assert manager.bucket_count == 0

    def test_update_emits_event(self, clock: FakeClock) -> None:
        """RATE_LIMIT_UPDATE carries the route key and remaining count."""
        emitter: EventEmitter[RestEvent] = EventEmitter()
        events: list[object] = []
        emitter.on(RestEvent.RATE_LIMIT_UPDATE, events.append)
        manager = RateLimitManager(emitter=emitter, time_fn=clock)

        manager.update_rate_limit("/channels/5/pins", "GET", bucket_headers(remaining=2), 200)

        assert len(events) == 1
        assert events[0].route_key == "GET:/channels/{channel_id}/pins"  # type: ignore[attr-defined]
        assert events[0].remaining == 2  # type: ignore[attr-defined]

    def test_shared_route_indexed(self, manager: RateLimitManager) -> None:
        """Buckets from shared route families are grouped by identifier."""
        manager.update_rate_limit(
            "/guilds/1/emojis", "GET", bucket_headers(bucket="emoji-a"), 200
        )
        manager.update_rate_limit(
            "/guilds/2/emojis/3", "PATCH", bucket_headers(bucket="emoji-b"), 200
        )

        assert manager.get_shared_hashes("emoji") == frozenset({"emoji-a", "emoji-b"})


class TestRateLimited:
    """Tests for 429 handling."""

    def test_retry_after_converted_to_ms(self, manager: RateLimitManager) -> None:
        """retry-after: 2 with no prior attempts -> 2000ms, attempt count 1."""
        headers = {"retry-after": "2", "x-ratelimit-scope": "user"}

        with pytest.raises(RateLimitError) as exc_info:
            manager.update_rate_limit("/channels/1/messages", "POST", headers, 429)

        error = exc_info.value
        assert error.retry_after_ms == 2000
        assert error.scope == "user"
        assert error.attempts == 1
        attempt = manager.get_attempt("POST:/channels/{channel_id}/messages")
        assert attempt is not None
        assert attempt.count == 1

    def test_consecutive_429_escalates(self, manager: RateLimitManager) -> None:
        """Nth consecutive 429 waits r * min(2**(N-1), 8)."""
        headers = {"retry-after": "1"}
        observed: list[int] = []
        for _ in range(5):
            with pytest.raises(RateLimitError) as exc_info:
                manager.update_rate_limit("/guilds/1/bans", "GET", headers, 429)
            observed.append(exc_info.value.retry_after_ms)

        assert observed == [1000, 2000, 4000, 8000, 8000]

    def test_success_resets_escalation(self, manager: RateLimitManager) -> None:
        """A single success returns the multiplier to 1."""
        headers = {"retry-after": "0.5"}
        for _ in range(3):
            with pytest.raises(RateLimitError):
                manager.update_rate_limit("/guilds/1/bans", "GET", headers, 429)

        manager.update_rate_limit("/guilds/1/bans", "GET", {}, 200)

        with pytest.raises(RateLimitError) as exc_info:
            manager.update_rate_limit("/guilds/1/bans", "GET", headers, 429)
        assert exc_info.value.retry_after_ms == 500
        assert exc_info.value.attempts == 1

    def test_missing_retry_after_uses_default(self, manager: RateLimitManager) -> None:
        """No retry-after or reset-after header: default_retry_after_ms."""
        with pytest.raises(RateLimitError) as exc_info:
            manager.update_rate_limit("/users/@me", "GET", {}, 429)

        assert exc_info.value.retry_after_ms == 1000

    def test_global_limit_flagged(self, manager: RateLimitManager) -> None:
        """x-ratelimit-global marks the error as global."""
        headers = {"retry-after": "1", "x-ratelimit-global": "true", "x-ratelimit-scope": "global"}

        with pytest.raises(RateLimitError) as exc_info:
            manager.update_rate_limit("/users/@me", "GET", headers, 429)

        assert exc_info.value.is_global

    def test_429_updates_bucket_before_raising(self, manager: RateLimitManager) -> None:
        """Bucket headers on a 429 are applied."""
        headers = {**bucket_headers(remaining=0, reset_after_s=1), "retry-after": "1"}

        with pytest.raises(RateLimitError):
            manager.update_rate_limit("/guilds/1/channels", "GET", headers, 429)

        bucket = manager.get_bucket("abc")
        assert bucket is not None
        assert bucket.remaining == 0

    def test_hit_event_emitted(self, clock: FakeClock) -> None:
        """RATE_LIMIT_HIT carries the adjusted delay."""
        emitter: EventEmitter[RestEvent] = EventEmitter()
        hits: list[RateLimitHitEvent] = []
        emitter.on(RestEvent.RATE_LIMIT_HIT, hits.append)
        manager = RateLimitManager(emitter=emitter, time_fn=clock)

        with pytest.raises(RateLimitError):
            manager.update_rate_limit("/users/@me", "GET", {"retry-after": "3"}, 429)

        assert len(hits) == 1
        assert hits[0].retry_after_ms == 3000
        assert hits[0].attempts == 1


class TestRouteKeys:
    """Tests for route key normalization."""

    def test_major_parameter_normalized(self, manager: RateLimitManager) -> None:
        """Different guild ids share a key; methods do not."""
        key_a = manager.get_route_key("GET", "/guilds/123/roles")
        key_b = manager.get_route_key("GET", "/guilds/456/roles")
        key_post = manager.get_route_key("POST", "/guilds/123/roles")

        assert key_a == key_b == "GET:/guilds/{guild_id}/roles"
        assert key_post != key_a

    def test_shared_family_key(self, manager: RateLimitManager) -> None:
        """Guild channel routes map onto one shared key."""
        assert manager.get_route_key("GET", "/guilds/123/channels") == "shared:guild-channels"
        assert manager.get_route_key("GET", "/guilds/123/channels") == manager.get_route_key(
            "GET", "/guilds/456/channels"
        )

    def test_minor_parameters_kept(self, manager: RateLimitManager) -> None:
        """Only the major parameter is replaced."""
        key = manager.get_route_key("DELETE", "/channels/1/messages/99")
        assert key == "DELETE:/channels/{channel_id}/messages/99"

    def test_webhook_key_includes_token(self, manager: RateLimitManager) -> None:
        """Webhook routes key on id, token and method."""
        assert manager.get_route_key("POST", "/webhooks/1/abc") == "webhook:1:abc:POST"


class TestCleanup:
    """Tests for expired state removal."""

    def test_expired_buckets_removed(self, manager: RateLimitManager, clock: FakeClock) -> None:
        manager.update_rate_limit(
            "/guilds/1/roles", "GET", bucket_headers(reset_ms=NOW_MS + 1000), 200
        )
        manager.update_rate_limit(
            "/channels/1/pins", "GET", bucket_headers(bucket="def", reset_ms=NOW_MS + 60000), 200
        )

        clock.advance(2000)
        removed = manager.cleanup_expired()

        assert removed == 1
        assert manager.get_bucket("abc") is None
        assert manager.get_bucket("def") is not None
        assert manager.get_rate_limit_status("/guilds/1/roles", "GET").limited is False

    def test_shared_set_pruned_then_deleted(
        self, manager: RateLimitManager, clock: FakeClock
    ) -> None:
        """Expired hashes leave the shared set; an empty set is dropped."""
        manager.update_rate_limit(
            "/guilds/1/emojis", "GET", bucket_headers(bucket="emoji-a", reset_ms=NOW_MS + 1000), 200
        )
        manager.update_rate_limit(
            "/guilds/2/emojis", "GET", bucket_headers(bucket="emoji-b", reset_ms=NOW_MS + 5000), 200
        )
        assert manager.get_shared_hashes("emoji") == frozenset({"emoji-a", "emoji-b"})

        clock.advance(2000)
        assert manager.cleanup_expired() == 1
        assert manager.get_shared_hashes("emoji") == frozenset({"emoji-b"})

        clock.advance(4000)
        assert manager.cleanup_expired() == 1
        assert manager.get_shared_hashes("emoji") == frozenset()
        assert manager.get_status()["shared_routes"] == 0

    def test_attempts_dropped_after_next_reset(
        self, manager: RateLimitManager, clock: FakeClock
    ) -> None:
        """A 429 attempt record survives until its next_reset, then is swept."""
        with pytest.raises(RateLimitError):
            manager.update_rate_limit("/guilds/1/bans", "GET", {"retry-after": "2"}, 429)
        route_key = "GET:/guilds/{guild_id}/bans"

        clock.advance(1000)
        manager.cleanup_expired()
        assert manager.get_attempt(route_key) is not None

        clock.advance(1500)
        manager.cleanup_expired()
        assert manager.get_attempt(route_key) is None

        with pytest.raises(RateLimitError) as exc_info:
            manager.update_rate_limit("/guilds/1/bans", "GET", {"retry-after": "2"}, 429)
        assert exc_info.value.attempts == 1

    def test_status_for_unknown_route(self, manager: RateLimitManager) -> None:
        status = manager.get_rate_limit_status("/users/@me", "GET")
        assert status.limited is False
        assert status.remaining == float("inf")

    @pytest.mark.asyncio
    async def test_destroy_cancels_sweep(self) -> None:
        """destroy() stops the sweep task and clears state; safe twice."""
        manager = RateLimitManager(RateLimitConfig(cleanup_interval_ms=10))
        manager.start()
        manager.update_rate_limit("/guilds/1/roles", "GET", bucket_headers(), 200)
        await asyncio.sleep(0)
        assert manager.is_running

        await manager.destroy()
        await manager.destroy()

        assert not manager.is_running
        assert manager.bucket_count == 0
