"""Tests for the trust based status cache."""

import pytest
from conftest import FakeClock

from sleepme.constants import (
    CacheConfidence,
    CacheDefaults,
    CacheOrigin,
    PowerState,
    ThermalState,
    UpdateContext,
)
from sleepme.infrastructure.errors import SleepMeValidationError
from sleepme.infrastructure.status_cache import StatusCache
from sleepme.models import DeviceStatus

NO_JITTER = CacheDefaults(JITTER_FACTOR=0.0)


@pytest.fixture
def clock():
    """Create a fake clock for the cache."""
    return FakeClock()


@pytest.fixture
def cache(clock):
    """Create a cache without jitter."""
    return StatusCache(NO_JITTER, clock=clock)


def standby_status(**kwargs):
    return DeviceStatus(thermal_state=ThermalState.STANDBY, **kwargs)


class TestPutVerified:
    """Tests for verified reads."""

    def test_put_verified_replaces_entry(self, cache):
        """Test a verified read is stored with high confidence."""
        cache.put_command_derived("d1", {"thermal_state": ThermalState.ACTIVE})

        entry = cache.put_verified("d1", standby_status(target_temperature=18.0))

        assert cache.get("d1") is entry
        assert entry.origin is CacheOrigin.VERIFIED_READ
        assert entry.confidence is CacheConfidence.HIGH
        assert entry.is_optimistic is False
        assert entry.status.power_state is PowerState.OFF
        assert entry.status.target_temperature == 18.0

    def test_get_unknown_device(self, cache):
        """Test unknown devices have no entry."""
        assert cache.get("missing") is None
        assert "missing" not in cache
        assert len(cache) == 0


class TestPutCommandDerived:
    """Tests for command derived updates."""

    def test_merges_onto_prior_entry(self, cache):
        """Test fields not in the update come from the prior entry."""
        cache.put_verified("d1", standby_status(current_temperature=25.0, firmware_version="5.39"))

        entry = cache.put_command_derived(
            "d1", {"thermal_state": ThermalState.ACTIVE, "target_temperature": 30.0}
        )

        assert entry.status.current_temperature == 25.0
        assert entry.status.firmware_version == "5.39"
        assert entry.status.target_temperature == 30.0
        assert entry.origin is CacheOrigin.COMMAND_DERIVED
        assert entry.confidence is CacheConfidence.HIGH
        assert entry.context is UpdateContext.USER

    def test_no_prior_entry_is_inferred(self, cache):
        """Test a command for an uncached device is stored as inferred."""
        entry = cache.put_command_derived("d1", {"thermal_state": ThermalState.ACTIVE})

        assert entry.origin is CacheOrigin.INFERRED
        assert entry.confidence is CacheConfidence.MEDIUM

    def test_optimistic_entry_low_confidence(self, cache):
        """Test unacknowledged commands get low confidence."""
        cache.put_verified("d1", standby_status())

        entry = cache.put_command_derived("d1", {"thermal_state": ThermalState.ACTIVE}, optimistic=True)

        assert entry.is_optimistic is True
        assert entry.confidence is CacheConfidence.LOW

    @pytest.mark.parametrize(
        "thermal,expected_power",
        [
            (ThermalState.HEATING, PowerState.ON),
            (ThermalState.COOLING, PowerState.ON),
            (ThermalState.ACTIVE, PowerState.ON),
            (ThermalState.STANDBY, PowerState.OFF),
            (ThermalState.OFF, PowerState.OFF),
        ],
    )
    def test_power_follows_thermal_state(self, cache, thermal, expected_power):
        """Test power state is re-derived whenever thermal state changes."""
        cache.put_verified("d1", DeviceStatus(thermal_state=ThermalState.HEATING))

        entry = cache.put_command_derived("d1", {"thermal_state": thermal})

        assert entry.status.power_state is expected_power

    def test_contradicting_power_state_overridden(self, cache):
        """Test an update cannot leave power and thermal state contradictory."""
        entry = cache.put_command_derived(
            "d1", {"thermal_state": ThermalState.STANDBY, "power_state": PowerState.ON}
        )

        assert entry.status.thermal_state is ThermalState.STANDBY
        assert entry.status.power_state is PowerState.OFF

    def test_power_only_update_moves_thermal_state(self, cache):
        """Test a power-only update adjusts thermal state to match."""
        cache.put_verified("d1", standby_status())

        on = cache.put_command_derived("d1", {"power_state": PowerState.ON})
        assert on.status.thermal_state is ThermalState.ACTIVE
        assert on.status.power_state is PowerState.ON

        off = cache.put_command_derived("d1", {"power_state": "off"})
        assert off.status.thermal_state is ThermalState.STANDBY
        assert off.status.power_state is PowerState.OFF

    def test_power_only_update_keeps_matching_thermal_state(self, cache):
        """Test a power update that already agrees keeps the thermal state."""
        cache.put_verified("d1", DeviceStatus(thermal_state=ThermalState.COOLING))

        entry = cache.put_command_derived("d1", {"power_state": PowerState.ON})

        assert entry.status.thermal_state is ThermalState.COOLING

    def test_unknown_fields_ignored(self, cache):
        """Test fields that are not status fields are dropped."""
        entry = cache.put_command_derived("d1", {"thermal_state": "heating", "brightness": 50})

        assert entry.status.thermal_state is ThermalState.HEATING
        assert not hasattr(entry.status, "brightness")

    def test_invalid_value_raises(self, cache):
        """Test an invalid value raises a validation error."""
        with pytest.raises(SleepMeValidationError):
            cache.put_command_derived("d1", {"thermal_state": "boiling"})

        with pytest.raises(SleepMeValidationError):
            cache.put_command_derived("d1", {"power_state": "sideways"})

    def test_power_and_thermal_state_agree_after_updates(self, cache):
        """Test power and thermal state agree after any sequence of updates."""
        updates = [
            {"thermal_state": ThermalState.HEATING},
            {"power_state": PowerState.OFF},
            {"target_temperature": 35.0},
            {"power_state": PowerState.ON},
            {"thermal_state": ThermalState.OFF, "power_state": PowerState.ON},
            {"thermal_state": ThermalState.COOLING, "power_state": PowerState.OFF},
        ]
        for update in updates:
            status = cache.put_command_derived("d1", update).status
            if status.thermal_state.is_active:
                assert status.power_state is PowerState.ON
            elif status.thermal_state.is_inactive:
                assert status.power_state is PowerState.OFF


class TestValidity:
    """Tests for context aware validity windows."""

    def test_normal_window(self, cache, clock):
        """Test a verified idle entry uses the normal window."""
        entry = cache.put_verified("d1", standby_status(), UpdateContext.SYSTEM)

        assert cache.validity_window(entry) == pytest.approx(180.0)
        clock.advance(179)
        assert cache.is_valid(entry) is True
        clock.advance(2)
        assert cache.is_valid(entry) is False

    def test_user_context_window(self, cache):
        """Test recent user interaction shortens the window."""
        cache.put_verified("d1", standby_status())
        entry = cache.put_command_derived("d1", {"thermal_state": ThermalState.STANDBY}, UpdateContext.USER)

        assert cache.validity_window(entry) == pytest.approx(60.0)

    def test_active_device_window(self, cache):
        """Test a heating device gets a shorter window."""
        entry = cache.put_verified("d1", DeviceStatus(thermal_state=ThermalState.HEATING))

        assert cache.validity_window(entry) == pytest.approx(90.0)

    def test_backoff_window(self, cache, clock):
        """Test rate limit backoff extends the window."""
        entry = cache.put_verified("d1", standby_status())
        clock.advance(300)

        assert cache.is_valid(entry) is False
        assert cache.is_valid(entry, backoff_active=True) is True
        assert cache.validity_window(entry, backoff_active=True) == pytest.approx(600.0)

    def test_idle_window(self, cache, clock):
        """Test the window grows after extended idle."""
        clock.advance(1800)
        entry = cache.put_verified("d1", standby_status())

        assert cache.validity_window(entry) == pytest.approx(900.0)

    def test_user_activity_ends_idle(self, cache, clock):
        """Test a user command brings windows back to normal."""
        clock.advance(1800)
        cache.put_command_derived("d2", {"thermal_state": ThermalState.STANDBY}, UpdateContext.USER)
        entry = cache.put_verified("d1", standby_status())

        assert cache.validity_window(entry) == pytest.approx(180.0)

    def test_user_command_outlives_optimistic_system_entry(self, cache):
        """Test a user command entry stays valid longer than an optimistic system one."""
        user_entry = cache.put_command_derived("d1", {"thermal_state": ThermalState.ACTIVE}, UpdateContext.USER)
        cache.invalidate("d1")
        system_entry = cache.put_command_derived(
            "d1", {"thermal_state": ThermalState.ACTIVE}, UpdateContext.SYSTEM, optimistic=True
        )

        assert cache.validity_window(user_entry) > cache.validity_window(system_entry)

    def test_user_command_outlives_optimistic_system_entry_with_prior(self, cache):
        """Test the same ordering when both entries merge onto a verified read."""
        cache.put_verified("d1", standby_status())
        user_entry = cache.put_command_derived("d1", {"thermal_state": ThermalState.ACTIVE}, UpdateContext.USER)
        cache.put_verified("d1", standby_status())
        system_entry = cache.put_command_derived(
            "d1", {"thermal_state": ThermalState.ACTIVE}, UpdateContext.SYSTEM, optimistic=True
        )

        assert cache.validity_window(user_entry) > cache.validity_window(system_entry)

    def test_emergency_window(self, cache, clock):
        """Test stale entries stay usable as fallback for 20 minutes."""
        entry = cache.put_verified("d1", standby_status())

        clock.advance(1200)
        assert cache.is_within_emergency_window(entry) is True
        clock.advance(1)
        assert cache.is_within_emergency_window(entry) is False


class TestJitter:
    """Tests for per device jitter."""

    def test_jitter_is_deterministic(self, clock):
        """Test the same device always gets the same window."""
        cache = StatusCache(clock=clock)
        other = StatusCache(clock=clock)
        entry = cache.put_verified("device-a", standby_status())

        assert cache.validity_window(entry) == other.validity_window(entry)

    def test_jitter_within_ten_percent(self, clock):
        """Test windows stay within 10 percent of nominal."""
        cache = StatusCache(clock=clock)
        for i in range(50):
            entry = cache.put_verified(f"device-{i}", standby_status())
            assert 162.0 <= cache.validity_window(entry) <= 198.0

    def test_jitter_spreads_devices(self, clock):
        """Test devices sharing a nominal window do not all expire together."""
        cache = StatusCache(clock=clock)
        windows = {
            round(cache.validity_window(cache.put_verified(f"device-{i}", standby_status())), 3)
            for i in range(20)
        }

        assert len(windows) > 1


class TestMaintenance:
    """Tests for cleanup and helpers."""

    def test_cleanup_removes_old_entries(self, cache, clock):
        """Test entries are removed after their emergency window passes."""
        cache.put_verified("d1", standby_status())
        clock.advance(1000)
        cache.put_verified("d2", standby_status())
        clock.advance(300)

        removed = cache.cleanup()

        assert removed == 1
        assert "d1" not in cache
        assert "d2" in cache

    def test_cleanup_runs_lazily_on_put(self, cache, clock):
        """Test writes trigger a periodic sweep."""
        cache.put_verified("d1", standby_status())
        clock.advance(1300)

        cache.put_verified("d2", standby_status())

        assert "d1" not in cache

    def test_last_known_temperature(self, cache):
        """Test the last target temperature is returned without an API call."""
        assert cache.last_known_temperature("d1", 21.0) == 21.0

        cache.put_verified("d1", standby_status(target_temperature=17.5))

        assert cache.last_known_temperature("d1") == 17.5

    def test_clear_and_invalidate(self, cache):
        """Test entries can be dropped."""
        cache.put_verified("d1", standby_status())
        cache.put_verified("d2", standby_status())

        cache.invalidate("d1")
        assert "d1" not in cache

        cache.clear()
        assert len(cache) == 0

    def test_get_stats(self, cache):
        """Test the cache summary."""
        cache.put_verified("d1", standby_status())
        cache.put_command_derived("d2", {"thermal_state": "active"}, optimistic=True)

        stats = cache.get_stats()

        assert stats["entries"] == 2
        assert stats["optimistic"] == 1
        assert stats["by_origin"]["verified_read"] == 1
        assert stats["by_origin"]["inferred"] == 1
