"""Rate limited async client for SleepMe Dock Pro devices."""

from .constants import (
    API_DEFAULTS,
    CACHE_DEFAULTS,
    APIDefaults,
    CacheConfidence,
    CacheDefaults,
    CacheOrigin,
    CompletionStatus,
    OperationType,
    PowerState,
    RequestPriority,
    ThermalState,
    UpdateContext,
)
from .coordinator import PollingCoordinator
from .infrastructure import (
    RateLimiterConfig,
    RequestScheduler,
    SleepMeAPIError,
    SleepMeAuthError,
    SleepMeConnectionError,
    SleepMeError,
    SleepMeParseError,
    SleepMeRateLimitError,
    SleepMeTimeoutError,
    SleepMeValidationError,
    StatusCache,
    TokenBucketRateLimiter,
)
from .models import (
    CacheEntry,
    ClientOptions,
    Device,
    DeviceStatus,
    RateLimitDecision,
    RequestResult,
)
from .sleepme_api import SleepMeAPI

__all__ = [
    # Client
    "SleepMeAPI",
    "PollingCoordinator",
    # Infrastructure
    "RateLimiterConfig",
    "RequestScheduler",
    "StatusCache",
    "TokenBucketRateLimiter",
    # Models
    "CacheEntry",
    "ClientOptions",
    "Device",
    "DeviceStatus",
    "RateLimitDecision",
    "RequestResult",
    # Constants
    "API_DEFAULTS",
    "CACHE_DEFAULTS",
    "APIDefaults",
    "CacheConfidence",
    "CacheDefaults",
    "CacheOrigin",
    "CompletionStatus",
    "OperationType",
    "PowerState",
    "RequestPriority",
    "ThermalState",
    "UpdateContext",
    # Errors
    "SleepMeError",
    "SleepMeRateLimitError",
    "SleepMeConnectionError",
    "SleepMeAPIError",
    "SleepMeTimeoutError",
    "SleepMeAuthError",
    "SleepMeParseError",
    "SleepMeValidationError",
]
