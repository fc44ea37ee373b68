"""Token bucket rate limiting for the SleepMe API.

The remote service behaves like a token bucket: a burst allowance followed
by a slow steady refill. Its real limits are undocumented, so every
number here is configuration. The older fixed-window and ultra
conservative strategies survive only as presets of the same bucket.
"""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from collections.abc import Callable

from pydantic import BaseModel, Field

from ..constants import RequestPriority
from ..models import RateLimitDecision, SleepMeModel

_LOGGER = logging.getLogger(__name__)


class RateLimiterConfig(BaseModel):
    """Tunable parameters of the token bucket.

    The safety margin only shrinks the capacity. The refill rate stays at
    the measured speed so recovery after a burst is not slowed down.
    """

    model_config = {"frozen": True}

    bucket_capacity: int = Field(default=10, ge=1, description="Measured burst allowance")
    safety_margin: float = Field(default=0.2, ge=0.0, lt=1.0, description="Fraction of capacity kept in reserve")
    refill_rate: float = Field(default=1 / 15, gt=0.0, description="Tokens per second")
    min_recovery_time: float = Field(default=5.0, gt=0.0, description="Backoff after the first 429 in seconds")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Backoff growth per consecutive 429")
    max_backoff: float = Field(default=300.0, gt=0.0, description="Backoff ceiling in seconds")
    allow_critical_bypass: bool = Field(default=True, description="Let CRITICAL requests skip an empty bucket")
    critical_bypass_limit: int = Field(default=3, ge=0, description="Bypasses allowed per window")
    critical_bypass_window: float = Field(default=35.0, gt=0.0, description="Bypass window in seconds")
    history_window: float = Field(default=600.0, gt=0.0, description="Outcome history kept for stats")

    @property
    def effective_capacity(self) -> int:
        """Capacity after applying the safety margin."""
        return max(1, math.floor(self.bucket_capacity * (1 - self.safety_margin) + 1e-9))

    @classmethod
    def preset(cls, name: str) -> RateLimiterConfig:
        """Get a named preset.

        Raises:
            ValueError: If the preset does not exist.
        """
        try:
            return RATE_LIMITER_PRESETS[name]
        except KeyError:
            raise ValueError(f"Unknown rate limiter preset: {name}") from None


RATE_LIMITER_PRESETS: dict[str, RateLimiterConfig] = {
    # Burst of 10 then one token every 15 seconds, as measured
    "token_bucket": RateLimiterConfig(),
    # Tiny bucket with slow refill for accounts that keep hitting 429
    "conservative": RateLimiterConfig(
        bucket_capacity=2,
        safety_margin=0.0,
        refill_rate=1 / 45,
        min_recovery_time=30.0,
        max_backoff=600.0,
        critical_bypass_limit=1,
        critical_bypass_window=60.0,
    ),
    # Four requests per minute, spread evenly instead of aligned to minutes
    "discrete_window": RateLimiterConfig(
        bucket_capacity=4,
        safety_margin=0.0,
        refill_rate=4 / 60,
        min_recovery_time=60.0,
        critical_bypass_limit=2,
        critical_bypass_window=60.0,
    ),
}


class RateLimiterState(SleepMeModel):
    """Mutable state of the bucket."""

    tokens: float = Field(default=0.0, ge=0.0, description="Available capacity, fractional")
    last_refill_time: float = Field(default=0.0, description="Refill reference, pushed forward during backoff")
    consecutive_failures: int = Field(default=0, ge=0)
    backoff_until: float = Field(default=0.0)
    bypasses_used_in_window: int = Field(default=0, ge=0)
    bypass_window_start: float = Field(default=0.0)


class TokenBucketRateLimiter:
    """Continuous refill token bucket with adaptive backoff.

    Tokens are reserved inside ``decide`` so a grant can never be observed
    twice. Outcomes only adjust backoff and statistics.

    Attributes:
        config: Active bucket parameters.
    """

    def __init__(
        self,
        config: RateLimiterConfig | None = None,
        clock: Callable[[], float] | None = None,
    ):
        """Initialize a full bucket.

        Args:
            config: Bucket parameters (default: the token_bucket preset).
            clock: Monotonic time source, replaceable in tests.
        """
        self.config = config or RateLimiterConfig()
        self._clock = clock or time.monotonic
        now = self._get_current_time()
        self._state = RateLimiterState(
            tokens=float(self.config.effective_capacity),
            last_refill_time=now,
            bypass_window_start=now,
        )
        # (timestamp, succeeded, was_rate_limited)
        self._history: deque[tuple[float, bool, bool]] = deque()

    # -------------------------------------------------------------------------
    # Time utilities
    # -------------------------------------------------------------------------

    def _get_current_time(self) -> float:
        """Get current monotonic time for rate limiting."""
        return self._clock()

    # -------------------------------------------------------------------------
    # Decisions
    # -------------------------------------------------------------------------

    def decide(self, priority: RequestPriority) -> RateLimitDecision:
        """Decide whether a request of this priority may be sent now.

        A granted decision has already consumed its token (or bypass).

        Args:
            priority: Priority of the request about to be dispatched.

        Returns:
            Decision with the suggested wait when denied.
        """
        now = self._get_current_time()
        self._refill(now)
        self._roll_bypass_window(now)
        state = self._state
        is_critical = priority is RequestPriority.CRITICAL

        if state.backoff_until > now:
            if is_critical and self._can_bypass():
                return self._grant_bypass("critical bypass during adaptive backoff")
            wait = state.backoff_until - now
            if is_critical:
                wait = self._cap_critical_wait(wait, now)
            return RateLimitDecision(
                allowed=False,
                wait_seconds=wait,
                reason="adaptive backoff active",
                tokens_remaining=state.tokens,
            )

        if state.tokens >= 1:
            state.tokens -= 1
            return RateLimitDecision(
                allowed=True, reason="token available", tokens_remaining=state.tokens
            )

        if is_critical and self._can_bypass():
            return self._grant_bypass("critical bypass with empty bucket")

        wait = self._time_until_next_token(now)
        if is_critical:
            wait = self._cap_critical_wait(wait, now)
        return RateLimitDecision(
            allowed=False,
            wait_seconds=wait,
            reason=f"bucket empty, waiting for {priority.label} slot",
            tokens_remaining=state.tokens,
        )

    def record_outcome(
        self, priority: RequestPriority, succeeded: bool, was_rate_limited: bool
    ) -> None:
        """Record the outcome of a dispatched request.

        A rate-limited outcome empties the bucket and starts an exponential
        backoff. A success resets the consecutive failure counter.
        """
        now = self._get_current_time()
        self._history.append((now, succeeded, was_rate_limited))
        self._prune_history(now)
        state = self._state

        if was_rate_limited:
            state.consecutive_failures += 1
            backoff = self._backoff_for(state.consecutive_failures)
            state.tokens = 0.0
            state.backoff_until = now + backoff
            # No refill until the backoff is over
            state.last_refill_time = now + backoff
            _LOGGER.warning(
                "Rate limited on %s request (%d consecutive), backing off for %.0fs",
                priority.label,
                state.consecutive_failures,
                backoff,
            )
        elif succeeded:
            if state.consecutive_failures:
                _LOGGER.info(
                    "Request succeeded after %d rate-limited attempts, backoff reset",
                    state.consecutive_failures,
                )
            state.consecutive_failures = 0

    def reset(self) -> None:
        """Refill the bucket and clear backoff and history."""
        now = self._get_current_time()
        self._state = RateLimiterState(
            tokens=float(self.config.effective_capacity),
            last_refill_time=now,
            bypass_window_start=now,
        )
        self._history.clear()

    # -------------------------------------------------------------------------
    # Bucket internals
    # -------------------------------------------------------------------------

    def _projected_tokens(self, now: float) -> float:
        """Tokens available at ``now`` without touching the state."""
        state = self._state
        elapsed = now - state.last_refill_time
        if elapsed <= 0:
            return state.tokens
        return min(
            float(self.config.effective_capacity),
            state.tokens + elapsed * self.config.refill_rate,
        )

    def _refill(self, now: float) -> None:
        state = self._state
        if now <= state.last_refill_time:
            return
        state.tokens = self._projected_tokens(now)
        state.last_refill_time = now

    def _time_until_next_token(self, now: float, tokens: float | None = None) -> float:
        state = self._state
        if tokens is None:
            tokens = state.tokens
        deficit = max(0.0, 1.0 - tokens)
        refill_start = max(now, state.last_refill_time)
        return (refill_start - now) + deficit / self.config.refill_rate

    def _backoff_for(self, failures: int) -> float:
        backoff = self.config.min_recovery_time * self.config.backoff_multiplier ** (failures - 1)
        return min(backoff, self.config.max_backoff)

    def _roll_bypass_window(self, now: float) -> None:
        state = self._state
        if now - state.bypass_window_start >= self.config.critical_bypass_window:
            state.bypass_window_start = now
            state.bypasses_used_in_window = 0

    def _can_bypass(self) -> bool:
        return (
            self.config.allow_critical_bypass
            and self._state.bypasses_used_in_window < self.config.critical_bypass_limit
        )

    def _grant_bypass(self, reason: str) -> RateLimitDecision:
        state = self._state
        state.bypasses_used_in_window += 1
        _LOGGER.info(
            "Critical bypass granted (%d/%d in window): %s",
            state.bypasses_used_in_window,
            self.config.critical_bypass_limit,
            reason,
        )
        return RateLimitDecision(allowed=True, reason=reason, tokens_remaining=state.tokens)

    def _cap_critical_wait(self, wait: float, now: float) -> float:
        # An exhausted bypass allowance comes back when its window rolls over
        if not self.config.allow_critical_bypass or self.config.critical_bypass_limit == 0:
            return wait
        window_left = self._state.bypass_window_start + self.config.critical_bypass_window - now
        return max(0.0, min(wait, window_left))

    def _prune_history(self, now: float) -> None:
        cutoff = now - self.config.history_window
        while self._history and self._history[0][0] < cutoff:
            self._history.popleft()

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def tokens(self) -> float:
        """Currently available tokens."""
        return self._projected_tokens(self._get_current_time())

    @property
    def backoff_active(self) -> bool:
        """Whether an adaptive backoff window is in effect."""
        return self._state.backoff_until > self._get_current_time()

    @property
    def backoff_remaining(self) -> float:
        """Seconds left in the current backoff window."""
        return max(0.0, self._state.backoff_until - self._get_current_time())

    @property
    def consecutive_failures(self) -> int:
        """Number of rate-limited outcomes since the last success."""
        return self._state.consecutive_failures

    @property
    def refill_rate(self) -> float:
        """Sustainable request rate in requests per second."""
        return self.config.refill_rate

    @property
    def recommended_interval(self) -> float:
        """Seconds between requests that the bucket can sustain forever."""
        return 1 / self.config.refill_rate

    def get_status(self) -> dict:
        """Get a snapshot of the limiter for statistics.

        Reading the snapshot never changes the bucket.

        Returns:
            Dictionary with bucket, backoff, bypass and outcome figures.
        """
        now = self._get_current_time()
        state = self._state
        tokens = self._projected_tokens(now)
        if now - state.bypass_window_start >= self.config.critical_bypass_window:
            bypasses_used = 0
        else:
            bypasses_used = state.bypasses_used_in_window
        cutoff = now - self.config.history_window
        history = [entry for entry in self._history if entry[0] >= cutoff]
        recent = len(history)
        successes = sum(1 for _, succeeded, _ in history if succeeded)
        return {
            "tokens": round(tokens, 3),
            "max_tokens": self.config.effective_capacity,
            "refill_rate": self.config.refill_rate,
            "tokens_per_minute": self.config.refill_rate * 60,
            "next_token_in": round(self._time_until_next_token(now, tokens), 3) if tokens < 1 else 0.0,
            "backoff_active": state.backoff_until > now,
            "backoff_remaining": round(max(0.0, state.backoff_until - now), 3),
            "consecutive_failures": state.consecutive_failures,
            "critical_bypasses_used": bypasses_used,
            "critical_bypasses_remaining": max(0, self.config.critical_bypass_limit - bypasses_used),
            "recent_requests": recent,
            "recent_rate_limited": sum(1 for *_, limited in history if limited),
            "success_rate": successes / recent if recent else 1.0,
            "recommended_interval": self.recommended_interval,
        }
