"""Fetch utilities - failure classification, backoff, retries."""

from .ratelimit import (
    DEFAULT_RETRY_DELAY_MS,
    NOT_RATE_LIMITED,
    RateLimitClassifier,
    RateLimitInfo,
    extract_error_message,
)
from .retries import BackoffPolicy, UpstreamRetrier

__all__ = [
    "DEFAULT_RETRY_DELAY_MS",
    "NOT_RATE_LIMITED",
    "RateLimitClassifier",
    "RateLimitInfo",
    "extract_error_message",
    "BackoffPolicy",
    "UpstreamRetrier",
]
