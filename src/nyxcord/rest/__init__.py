"""Discord REST client: rate limits, retries, request queue and HTTP transport."""

from nyxcord.rest.client import Rest
from nyxcord.rest.http import HttpService
from nyxcord.rest.queue import QueueItem, QueueManager
from nyxcord.rest.rate_limit import RateLimitManager
from nyxcord.rest.retry import RetryContext, RetryDecision, RetryManager, RetryState
from nyxcord.rest.types import (
    FileUpload,
    HttpConfig,
    HttpResponse,
    QueueConfig,
    QueuePriority,
    RateLimitBucket,
    RateLimitConfig,
    RequestOptions,
    RestConfig,
    RestEvent,
    RestMetrics,
    RetryConfig,
    RetryReason,
)

__all__ = [
    "FileUpload",
    "HttpConfig",
    "HttpResponse",
    "HttpService",
    "QueueConfig",
    "QueueItem",
    "QueueManager",
    "QueuePriority",
    "RateLimitBucket",
    "RateLimitConfig",
    "RateLimitManager",
    "RequestOptions",
    "Rest",
    "RestConfig",
    "RestEvent",
    "RestMetrics",
    "RetryConfig",
    "RetryContext",
    "RetryDecision",
    "RetryManager",
    "RetryReason",
    "RetryState",
]
