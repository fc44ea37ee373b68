"""Infrastructure layer for the SleepMe client.

This package contains core infrastructure components:
- API decorators routing calls through the scheduler
- Token bucket rate limiting
- Priority request scheduling
- Trust based status caching
- Error definitions
"""

from .api import api_get, api_patch
from .errors import (
    SleepMeAPIError,
    SleepMeAuthError,
    SleepMeConnectionError,
    SleepMeError,
    SleepMeParseError,
    SleepMeRateLimitError,
    SleepMeTimeoutError,
    SleepMeValidationError,
    is_transient_error,
)
from .rate_limiter import RATE_LIMITER_PRESETS, RateLimiterConfig, TokenBucketRateLimiter
from .request_queue import QueuedRequest, RequestScheduler
from .status_cache import StatusCache

__all__ = [
    # API decorators
    "api_get",
    "api_patch",
    # Rate limiting
    "RATE_LIMITER_PRESETS",
    "RateLimiterConfig",
    "TokenBucketRateLimiter",
    # Scheduling
    "QueuedRequest",
    "RequestScheduler",
    # Caching
    "StatusCache",
    # Errors
    "SleepMeError",
    "SleepMeRateLimitError",
    "SleepMeConnectionError",
    "SleepMeAPIError",
    "SleepMeTimeoutError",
    "SleepMeAuthError",
    "SleepMeParseError",
    "SleepMeValidationError",
    "is_transient_error",
]
