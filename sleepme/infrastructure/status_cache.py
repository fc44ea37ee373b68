"""Trust based status cache for SleepMe devices.

A verified read always replaces the cached status. A write acknowledged
by the API updates the cache from the command itself, without a follow-up
read, so the merge step must keep power and thermal state consistent.
How long an entry stays valid depends on who wrote it, what the device is
doing and whether the API is currently rate limiting us.
"""

from __future__ import annotations

import logging
import time
import zlib
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import ValidationError

from ..constants import (
    CACHE_DEFAULTS,
    CacheConfidence,
    CacheDefaults,
    CacheOrigin,
    PowerState,
    ThermalState,
    UpdateContext,
)
from ..models import CacheEntry, DeviceStatus
from .errors import SleepMeValidationError

_LOGGER = logging.getLogger(__name__)


class StatusCache:
    """Best known status per device with trust metadata.

    All operations are synchronous, so they are atomic with respect to the
    event loop and safe to call from any task.
    """

    def __init__(
        self,
        defaults: CacheDefaults = CACHE_DEFAULTS,
        clock: Callable[[], float] | None = None,
    ):
        """Initialize an empty cache.

        Args:
            defaults: Validity windows and trust factors.
            clock: Monotonic time source, replaceable in tests.
        """
        self._defaults = defaults
        self._clock = clock or time.monotonic
        self._entries: dict[str, CacheEntry] = {}
        now = self._get_current_time()
        self._last_user_activity = now
        self._last_cleanup = now

    def _get_current_time(self) -> float:
        """Get current monotonic time."""
        return self._clock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._entries

    # -------------------------------------------------------------------------
    # Reads and writes
    # -------------------------------------------------------------------------

    def get(self, device_id: str) -> CacheEntry | None:
        """Get the entry for a device regardless of its validity."""
        return self._entries.get(device_id)

    def put_verified(
        self,
        device_id: str,
        status: DeviceStatus,
        context: UpdateContext = UpdateContext.SYSTEM,
    ) -> CacheEntry:
        """Replace the entry with a status read from the API.

        Args:
            device_id: Device the status belongs to.
            status: Parsed status of a successful read.
            context: Who asked for the read.

        Returns:
            The new cache entry.
        """
        now = self._get_current_time()
        entry = CacheEntry(
            device_id=device_id,
            status=status,
            captured_at=now,
            is_optimistic=False,
            confidence=CacheConfidence.HIGH,
            origin=CacheOrigin.VERIFIED_READ,
            context=context,
        )
        self._store(entry, now)
        _LOGGER.debug(
            "Cached verified status for %s: %s/%s",
            device_id,
            status.thermal_state.value,
            status.power_state.value,
        )
        return entry

    def put_command_derived(
        self,
        device_id: str,
        partial_update: Mapping[str, Any],
        context: UpdateContext = UpdateContext.USER,
        *,
        optimistic: bool = False,
    ) -> CacheEntry:
        """Merge the effect of a command onto the cached status.

        Fields missing from ``partial_update`` come from the prior entry, or
        from defaults when the device has never been cached. Power state is
        always re-derived from thermal state. A power-only update moves the
        thermal state along with it, so the two can never disagree.

        Args:
            device_id: Device the command was sent to.
            partial_update: DeviceStatus field names and their new values.
            context: Who issued the command.
            optimistic: True when the API has not acknowledged the command.

        Returns:
            The new cache entry.

        Raises:
            SleepMeValidationError: If the merged status is invalid.
        """
        now = self._get_current_time()
        prior = self._entries.get(device_id)

        update = {k: v for k, v in partial_update.items() if k in DeviceStatus.model_fields}
        ignored = set(partial_update) - set(update)
        if ignored:
            _LOGGER.warning("Ignoring unknown status fields for %s: %s", device_id, sorted(ignored))

        base = prior.status if prior is not None else DeviceStatus()
        merged = {**base.model_dump(), **update}

        if "power_state" in update and "thermal_state" not in update:
            try:
                power = PowerState(update["power_state"])
                thermal = ThermalState(merged["thermal_state"])
            except ValueError as e:
                raise SleepMeValidationError(f"Invalid status update for {device_id}: {e}") from e
            if power is PowerState.ON and not thermal.is_active:
                merged["thermal_state"] = ThermalState.ACTIVE
            elif power is PowerState.OFF and not thermal.is_inactive:
                merged["thermal_state"] = ThermalState.STANDBY

        try:
            status = DeviceStatus(**merged)
        except ValidationError as e:
            raise SleepMeValidationError(f"Invalid status update for {device_id}: {e}") from e

        if optimistic:
            confidence = CacheConfidence.LOW
        elif prior is None:
            confidence = CacheConfidence.MEDIUM
        else:
            confidence = CacheConfidence.HIGH

        entry = CacheEntry(
            device_id=device_id,
            status=status,
            captured_at=now,
            is_optimistic=optimistic,
            confidence=confidence,
            origin=CacheOrigin.COMMAND_DERIVED if prior is not None else CacheOrigin.INFERRED,
            context=context,
        )
        self._store(entry, now)
        _LOGGER.debug(
            "Cached command-derived status for %s (%s, %s): %s/%s",
            device_id,
            context.value,
            confidence.value,
            status.thermal_state.value,
            status.power_state.value,
        )
        return entry

    def invalidate(self, device_id: str) -> None:
        """Drop the entry for a device."""
        self._entries.pop(device_id, None)

    def clear(self) -> None:
        """Drop all entries."""
        self._entries.clear()

    def _store(self, entry: CacheEntry, now: float) -> None:
        self._entries[entry.device_id] = entry
        if entry.context is UpdateContext.USER:
            self._last_user_activity = now
        if now - self._last_cleanup >= self._defaults.CLEANUP_INTERVAL:
            self.cleanup(now)

    # -------------------------------------------------------------------------
    # Validity
    # -------------------------------------------------------------------------

    def validity_window(
        self, entry: CacheEntry, now: float | None = None, *, backoff_active: bool = False
    ) -> float:
        """Get how long an entry stays valid, in seconds.

        Args:
            entry: The entry to evaluate.
            now: Current monotonic time (default: the cache clock).
            backoff_active: Whether the rate limiter is backing off.
        """
        if now is None:
            now = self._get_current_time()
        defaults = self._defaults
        if backoff_active:
            base = defaults.BACKOFF_TTL
        elif entry.context is UpdateContext.USER:
            base = defaults.USER_ACTIVE_TTL
        elif entry.status.is_active:
            base = defaults.DEVICE_ACTIVE_TTL
        elif now - self._last_user_activity >= defaults.IDLE_AFTER:
            base = defaults.IDLE_TTL
        else:
            base = defaults.NORMAL_TTL
        return base * defaults.trust_factor(entry.confidence) * self._jitter(entry.device_id)

    def is_valid(
        self, entry: CacheEntry, now: float | None = None, *, backoff_active: bool = False
    ) -> bool:
        """Check whether an entry can be served without asking the API."""
        if now is None:
            now = self._get_current_time()
        return entry.age(now) < self.validity_window(entry, now, backoff_active=backoff_active)

    def is_within_emergency_window(self, entry: CacheEntry, now: float | None = None) -> bool:
        """Check whether a stale entry may still be served as a last resort."""
        if now is None:
            now = self._get_current_time()
        return entry.age(now) <= self._defaults.EMERGENCY_FALLBACK_TTL

    def _jitter(self, device_id: str) -> float:
        # crc32 is stable across processes, unlike hash()
        fraction = (zlib.crc32(device_id.encode()) % 10_000) / 10_000
        return 1 + (fraction * 2 - 1) * self._defaults.JITTER_FACTOR

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def last_known_temperature(self, device_id: str, default: float | None = None) -> float | None:
        """Get the last known target temperature of a device."""
        entry = self._entries.get(device_id)
        if entry is None:
            return default
        return entry.status.target_temperature

    def cleanup(self, now: float | None = None) -> int:
        """Remove entries that have gone unused for too long.

        An entry is removed once its age exceeds twice its nominal validity
        window, but never while it could still serve as emergency fallback.

        Returns:
            Number of removed entries.
        """
        if now is None:
            now = self._get_current_time()
        self._last_cleanup = now
        expired = [
            device_id
            for device_id, entry in self._entries.items()
            if entry.age(now)
            > max(2 * self.validity_window(entry, now), self._defaults.EMERGENCY_FALLBACK_TTL)
        ]
        for device_id in expired:
            del self._entries[device_id]
        if expired:
            _LOGGER.debug("Removed %d expired cache entries", len(expired))
        return len(expired)

    def get_stats(self) -> dict:
        """Get a summary of the cached entries."""
        now = self._get_current_time()
        return {
            "entries": len(self._entries),
            "optimistic": sum(1 for e in self._entries.values() if e.is_optimistic),
            "by_origin": {
                origin.value: sum(1 for e in self._entries.values() if e.origin is origin)
                for origin in CacheOrigin
            },
            "oldest_age": max((e.age(now) for e in self._entries.values()), default=0.0),
        }
