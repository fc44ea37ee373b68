"""Constants and Enums for the SleepMe client."""

from __future__ import annotations

from enum import Enum, IntEnum

from pydantic import BaseModel, Field

# Remote API
API_BASE_URL = "https://api.developer.sleep.me/v1"

# Temperatures are handled in Celsius everywhere except the outbound PATCH payload
DEFAULT_TEMPERATURE_C = 21.0
MIN_TEMPERATURE_C = 13.0
MAX_TEMPERATURE_C = 46.0

# Payload keys of the PATCH /devices/{id} body
PAYLOAD_THERMAL_STATUS = "thermal_control_status"
PAYLOAD_SET_TEMPERATURE_F = "set_temperature_f"


class RequestPriority(IntEnum):
    """Scheduling priority of a queued request.

    Lower values are dispatched first. CRITICAL is reserved for user
    issued write commands, HIGH for user reads and explicit refreshes,
    NORMAL for routine polling of active devices and LOW for background
    polling and discovery.
    """

    CRITICAL = 0
    HIGH = 1
    NORMAL = 2
    LOW = 3

    @property
    def label(self) -> str:
        """Lower case name used in logs and statistics."""
        return self.name.lower()


class ThermalState(str, Enum):
    """Thermal control status reported by the device."""

    OFF = "off"
    STANDBY = "standby"
    HEATING = "heating"
    COOLING = "cooling"
    ACTIVE = "active"
    UNKNOWN = "unknown"

    @property
    def is_active(self) -> bool:
        """Whether this state means the device is running."""
        return self in ACTIVE_THERMAL_STATES

    @property
    def is_inactive(self) -> bool:
        """Whether this state means the device is powered down."""
        return self in INACTIVE_THERMAL_STATES

    @classmethod
    def from_api(cls, value: str) -> ThermalState | None:
        """Map an API status string case-insensitively.

        Returns:
            Matching ThermalState or None if the string is not recognized.
        """
        normalized = value.strip().lower()
        for state in cls:
            if state.value == normalized and state is not cls.UNKNOWN:
                return state
        return None


class PowerState(str, Enum):
    """Power state derived from the thermal state."""

    ON = "on"
    OFF = "off"
    UNKNOWN = "unknown"


ACTIVE_THERMAL_STATES = frozenset(
    {ThermalState.HEATING, ThermalState.COOLING, ThermalState.ACTIVE}
)
INACTIVE_THERMAL_STATES = frozenset({ThermalState.STANDBY, ThermalState.OFF})


class OperationType(str, Enum):
    """Kind of API operation carried by a queued request."""

    READ_STATUS = "read-status"
    WRITE_SETTINGS = "write-settings"
    LIST_DEVICES = "list-devices"


class CacheConfidence(str, Enum):
    """How much a cache entry is trusted."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class CacheOrigin(str, Enum):
    """Where the cached status came from."""

    VERIFIED_READ = "verified_read"
    COMMAND_DERIVED = "command_derived"
    INFERRED = "inferred"


class UpdateContext(str, Enum):
    """Who caused a cache update."""

    USER = "user"
    SCHEDULE = "schedule"
    SYSTEM = "system"


class CompletionStatus(str, Enum):
    """How a scheduled request was resolved.

    COMPLETED carries the response body. ASSUMED is a stuck write that was
    force-completed and is treated as accepted by the server. SUPERSEDED is
    an executing request overtaken by a newer write for the same device.
    The remaining states resolve without data.
    """

    COMPLETED = "completed"
    ASSUMED = "assumed"
    SUPERSEDED = "superseded"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    EXPIRED = "expired"
    SKIPPED = "skipped"


class APIDefaults(BaseModel):
    """Default values for API scheduling and polling.

    Immutable configuration values for request timeouts, retry budgets,
    scheduler backoff and polling cadences. These values can be overridden
    when instantiating the scheduler, the API client or the coordinator.
    """

    model_config = {"frozen": True}

    CRITICAL_TIMEOUT: float = Field(default=30.0, description="Timeout for CRITICAL requests in seconds")
    HIGH_TIMEOUT: float = Field(default=20.0, description="Timeout for HIGH requests in seconds")
    NORMAL_TIMEOUT: float = Field(default=15.0, description="Timeout for NORMAL requests in seconds")
    LOW_TIMEOUT: float = Field(default=10.0, description="Timeout for LOW requests in seconds")
    MAX_RETRIES: int = Field(default=3, description="Number of retries for transient failures")
    RETRY_BASE_DELAY: float = Field(default=2.0, description="Base of the exponential delay before a retry")
    MAX_RETRY_DELAY: float = Field(default=30.0, description="Upper bound for the retry delay in seconds")
    RATE_LIMIT_BACKOFF: float = Field(
        default=15.0,
        description="Scheduler hold for non-critical requests after a 429 in seconds",
    )
    CRITICAL_RATE_LIMIT_BACKOFF: float = Field(
        default=5.0,
        description="Scheduler hold for CRITICAL requests after a 429 in seconds",
    )
    MAX_EXECUTING_TIME: float = Field(
        default=120.0,
        description="Ceiling after which an executing request is force-completed",
    )
    MAX_QUEUE_AGE: float = Field(default=300.0, description="Pending reads older than this expire")
    BACKLOG_SHED_THRESHOLD: int = Field(
        default=5,
        description="Pending requests at which routine status reads are skipped",
    )
    POLLING_INTERVAL: float = Field(default=120.0, description="Slow cadence interval for inactive devices")
    MIN_ACTIVE_POLLING_INTERVAL: float = Field(default=15.0, description="Lower bound of the fast cadence")
    INITIAL_POLL_DELAY: float = Field(default=5.0, description="Delay before the first poll after start")
    INTER_DEVICE_DELAY: float = Field(default=0.2, description="Pacing delay between devices in one cycle")
    POLL_JOIN_THRESHOLD: float = Field(
        default=5.0,
        description="A refresh joins the next fast poll when it is this close",
    )
    MAX_ACTIVE_DURATION: float = Field(
        default=30 * 60.0,
        description="Devices active for longer than this are demoted",
    )

    def timeout_for(self, priority: RequestPriority) -> float:
        """Get the I/O timeout for a priority."""
        return {
            RequestPriority.CRITICAL: self.CRITICAL_TIMEOUT,
            RequestPriority.HIGH: self.HIGH_TIMEOUT,
            RequestPriority.NORMAL: self.NORMAL_TIMEOUT,
            RequestPriority.LOW: self.LOW_TIMEOUT,
        }[priority]

    def retry_budget_for(self, priority: RequestPriority) -> int:
        """Get how many times a request of this priority may be retried."""
        return {
            RequestPriority.CRITICAL: self.MAX_RETRIES + 2,
            RequestPriority.HIGH: self.MAX_RETRIES,
            RequestPriority.NORMAL: max(self.MAX_RETRIES - 1, 0),
            RequestPriority.LOW: max(self.MAX_RETRIES - 2, 0),
        }[priority]

    def retry_delay_for(self, attempt: int) -> float:
        """Get the delay before retry number ``attempt`` (1-based)."""
        return min(self.RETRY_BASE_DELAY**attempt, self.MAX_RETRY_DELAY)


class CacheDefaults(BaseModel):
    """Validity windows and trust factors of the status cache."""

    model_config = {"frozen": True}

    USER_ACTIVE_TTL: float = Field(default=60.0, description="Window after a user command")
    DEVICE_ACTIVE_TTL: float = Field(default=90.0, description="Window for a heating/cooling device")
    NORMAL_TTL: float = Field(default=180.0, description="Default window")
    BACKOFF_TTL: float = Field(default=600.0, description="Window while rate-limit backoff is active")
    IDLE_TTL: float = Field(default=900.0, description="Window after extended idle")
    IDLE_AFTER: float = Field(default=30 * 60.0, description="Time without user interaction counted as idle")
    EMERGENCY_FALLBACK_TTL: float = Field(
        default=1200.0,
        description="Maximum age of stale data served when rate limit retries are exhausted",
    )
    JITTER_FACTOR: float = Field(default=0.1, ge=0.0, lt=1.0, description="Per-device jitter (+/-)")
    HIGH_TRUST_FACTOR: float = Field(default=1.0, description="Window multiplier for high confidence")
    MEDIUM_TRUST_FACTOR: float = Field(default=0.75, description="Window multiplier for medium confidence")
    LOW_TRUST_FACTOR: float = Field(default=0.25, description="Window multiplier for low confidence")
    CLEANUP_INTERVAL: float = Field(default=300.0, description="Minimum time between cleanup sweeps")

    def trust_factor(self, confidence: CacheConfidence) -> float:
        """Get the window multiplier for a confidence level."""
        return {
            CacheConfidence.HIGH: self.HIGH_TRUST_FACTOR,
            CacheConfidence.MEDIUM: self.MEDIUM_TRUST_FACTOR,
            CacheConfidence.LOW: self.LOW_TRUST_FACTOR,
        }[confidence]


# Create default instances for easy access
API_DEFAULTS = APIDefaults()
CACHE_DEFAULTS = CacheDefaults()
