"""Tests for the polling coordinator."""

import asyncio
from unittest.mock import MagicMock

import pytest
from conftest import FakeClock

from sleepme.constants import APIDefaults, CacheOrigin, RequestPriority, ThermalState
from sleepme.coordinator import PollingCoordinator
from sleepme.infrastructure.errors import SleepMeConnectionError
from sleepme.models import CacheEntry, ClientOptions, DeviceStatus

HEATING = DeviceStatus(thermal_state=ThermalState.HEATING, current_temperature=25.0)
STANDBY = DeviceStatus(thermal_state=ThermalState.STANDBY)


def entry(status, origin=CacheOrigin.VERIFIED_READ):
    return CacheEntry(device_id="zx-1", status=status, captured_at=0.0, origin=origin)


@pytest.fixture
def clock():
    """Create a fake clock for the coordinator."""
    return FakeClock()


@pytest.fixture
def coordinator(mock_api, fast_defaults, clock):
    """Create a coordinator that does not start by itself."""
    return PollingCoordinator(mock_api, defaults=fast_defaults, auto_start=False, clock=clock)


class TestRegistration:
    """Tests for device registration."""

    def test_subscribes_to_status_updates(self, mock_api, coordinator):
        """Test the coordinator listens to cache updates of the client."""
        mock_api.add_status_listener.assert_called_once_with(coordinator._handle_status_update)

    def test_register_without_event_loop(self, mock_api, fast_defaults):
        """Test registering outside a running loop defers polling."""
        coordinator = PollingCoordinator(mock_api, defaults=fast_defaults)

        coordinator.register_device("zx-1", MagicMock())

        assert coordinator.is_running is False
        assert coordinator.get_stats()["registered_devices"] == 1

    def test_register_twice_replaces_callbacks(self, coordinator):
        """Test re-registering keeps state and swaps callbacks."""
        first, second = MagicMock(), MagicMock()
        coordinator.register_device("zx-1", first)
        coordinator.notify_device_active("zx-1")

        coordinator.register_device("zx-1", second)

        assert coordinator.is_device_active("zx-1") is True
        assert coordinator._devices["zx-1"].on_status_update is second

    @pytest.mark.asyncio
    async def test_auto_start_and_stop_with_last_device(self, mock_api, fast_defaults):
        """Test polling starts with the first device and stops with the last."""
        coordinator = PollingCoordinator(mock_api, defaults=fast_defaults, polling_interval=60)

        coordinator.register_device("zx-1", MagicMock())
        assert coordinator.is_running is True

        coordinator.unregister_device("zx-1")
        await asyncio.sleep(0)
        assert coordinator.is_running is False

    def test_from_options_uses_polling_interval(self, mock_api):
        """Test the configured polling interval drives the slow cadence."""
        options = ClientOptions(api_token="secret", polling_interval=300)

        coordinator = PollingCoordinator.from_options(options, mock_api, auto_start=False)

        assert coordinator.polling_interval == 300
        assert coordinator.get_stats()["polling_interval"] == 300
        mock_api.add_status_listener.assert_called_once()

    def test_from_options_builds_client(self):
        """Test a client with the configured preset is built when none is given."""
        options = ClientOptions(api_token="secret", polling_interval=90, rate_limiter_preset="conservative")

        coordinator = PollingCoordinator.from_options(options, auto_start=False)

        assert coordinator.polling_interval == 90
        assert coordinator._api.rate_limiter.config.bucket_capacity == 2

    def test_validate_cached_devices(self, coordinator):
        """Test devices the account no longer lists are removed."""
        coordinator.register_device("zx-1", MagicMock())
        coordinator.register_device("zx-2", MagicMock())

        removed = coordinator.validate_cached_devices(["zx-2", "zx-3"])

        assert removed == ["zx-1"]
        assert coordinator.get_stats()["registered_devices"] == 1

    @pytest.mark.asyncio
    async def test_cleanup_detaches_listener(self, mock_api, coordinator):
        """Test cleanup unsubscribes from the client."""
        coordinator.register_device("zx-1", MagicMock())

        await coordinator.cleanup()

        mock_api.add_status_listener.return_value.assert_called_once_with()
        assert coordinator.get_stats()["registered_devices"] == 0


class TestCadences:
    """Tests for slow and fast polling cycles."""

    @pytest.mark.asyncio
    async def test_heating_device_moves_to_fast_cadence_and_back(self, mock_api, coordinator):
        """Test a heating device joins the fast cadence and leaves it on standby."""
        callback = MagicMock()
        coordinator.register_device("zx-1", callback)

        mock_api.get_device_status.return_value = HEATING
        await coordinator._async_poll_slow_cycle()
        assert coordinator.get_active_devices() == ["zx-1"]

        mock_api.get_device_status.return_value = STANDBY
        await coordinator._async_poll_fast_cycle()
        assert coordinator.get_active_devices() == []

        assert callback.call_args_list[0].args == ("zx-1", HEATING)
        assert callback.call_args_list[1].args == ("zx-1", STANDBY)

    @pytest.mark.asyncio
    async def test_slow_cycle_forces_fresh_every_other_cycle(self, mock_api, coordinator):
        """Test the slow cadence only forces verified reads on alternate cycles."""
        coordinator.register_device("zx-1", MagicMock())
        mock_api.get_device_status.return_value = STANDBY

        await coordinator._async_poll_slow_cycle()
        await coordinator._async_poll_slow_cycle()
        await coordinator._async_poll_slow_cycle()

        forced = [call.args[1] for call in mock_api.get_device_status.call_args_list]
        assert forced == [False, True, False]
        for call in mock_api.get_device_status.call_args_list:
            assert call.kwargs["priority"] is RequestPriority.LOW
            assert call.kwargs["raise_on_error"] is True

    @pytest.mark.asyncio
    async def test_cycles_split_devices(self, mock_api, coordinator):
        """Test each cadence only polls its own devices."""
        coordinator.register_device("zx-1", MagicMock())
        coordinator.register_device("zx-2", MagicMock())
        coordinator.notify_device_active("zx-1")
        mock_api.get_device_status.return_value = None

        fast = await coordinator._async_poll_fast_cycle()
        slow = await coordinator._async_poll_slow_cycle()

        assert list(fast) == ["zx-1"]
        assert list(slow) == ["zx-2"]
        fast_call = mock_api.get_device_status.call_args_list[0]
        assert fast_call.args == ("zx-1", True)
        assert fast_call.kwargs["priority"] is RequestPriority.NORMAL

    def test_fast_interval_matches_sustainable_rate(self, coordinator):
        """Test the fast interval spreads active devices over the refill rate."""
        for device_id in ("zx-1", "zx-2", "zx-3"):
            coordinator.register_device(device_id, MagicMock())

        assert coordinator.fast_interval == pytest.approx(15.0)

        coordinator.notify_device_active("zx-1")
        coordinator.notify_device_active("zx-2")
        coordinator.notify_device_active("zx-3")

        assert coordinator.fast_interval == pytest.approx(45.0)

    def test_fast_interval_lower_bound(self, mock_api, coordinator):
        """Test the fast interval never drops below its minimum."""
        mock_api.sustainable_request_rate = 10.0

        assert coordinator.fast_interval == pytest.approx(15.0)

    @pytest.mark.asyncio
    async def test_cadences_run_until_stopped(self, mock_api):
        """Test both cadences poll in the background."""
        mock_api.sustainable_request_rate = 1000.0
        mock_api.get_device_status.return_value = HEATING
        defaults = APIDefaults(INITIAL_POLL_DELAY=0.0, INTER_DEVICE_DELAY=0.0, MIN_ACTIVE_POLLING_INTERVAL=0.01)
        coordinator = PollingCoordinator(mock_api, defaults=defaults, polling_interval=60)

        coordinator.register_device("zx-1", MagicMock())
        for _ in range(100):
            if mock_api.get_device_status.call_count >= 3:
                break
            await asyncio.sleep(0.01)
        await coordinator.stop()

        priorities = [call.kwargs["priority"] for call in mock_api.get_device_status.call_args_list]
        assert priorities[0] is RequestPriority.LOW
        assert RequestPriority.NORMAL in priorities
        assert coordinator.is_running is False
        assert coordinator.get_stats()["fast_cycles"] >= 1


class TestErrors:
    """Tests for poll failures."""

    @pytest.mark.asyncio
    async def test_error_callback(self, mock_api, coordinator):
        """Test poll failures go to the error callback."""
        on_status, on_error = MagicMock(), MagicMock()
        coordinator.register_device("zx-1", on_status, on_error)
        error = SleepMeConnectionError("offline")
        mock_api.get_device_status.side_effect = error

        results = await coordinator.trigger_immediate_poll()

        assert results == {"zx-1": None}
        on_error.assert_called_once_with("zx-1", error)
        on_status.assert_not_called()
        assert coordinator.get_stats()["devices"]["zx-1"]["errors"] == 1

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_stop_cycle(self, mock_api, coordinator):
        """Test a raising callback does not prevent polling other devices."""
        coordinator.register_device("zx-1", MagicMock(side_effect=RuntimeError("boom")))
        second = MagicMock()
        coordinator.register_device("zx-2", second)
        mock_api.get_device_status.return_value = STANDBY

        await coordinator.trigger_immediate_poll()

        second.assert_called_once_with("zx-2", STANDBY)


class TestActivityTracking:
    """Tests for active and stale-active handling."""

    def test_command_entry_activates_device(self, coordinator):
        """Test a command showing the device active moves it to the fast cadence."""
        coordinator.register_device("zx-1", MagicMock())

        coordinator._handle_status_update("zx-1", entry(HEATING, CacheOrigin.COMMAND_DERIVED))

        assert coordinator.is_device_active("zx-1") is True

    def test_updates_for_unknown_devices_ignored(self, coordinator):
        """Test updates for unregistered devices are ignored."""
        coordinator._handle_status_update("zx-9", entry(HEATING))

        assert coordinator.get_active_devices() == []

    def test_stale_active_device_demoted(self, coordinator, clock):
        """Test a device reporting active past the ceiling is demoted."""
        coordinator.register_device("zx-1", MagicMock())
        coordinator._handle_status_update("zx-1", entry(HEATING))

        clock.advance(1801)
        coordinator._cleanup_stale_active()

        assert coordinator.is_device_active("zx-1") is False
        assert coordinator.get_stats()["stale_active_devices"] == ["zx-1"]

    def test_stale_device_not_repromoted_by_reads(self, coordinator, clock):
        """Test verified reads do not re-promote a stale device until it is seen inactive."""
        coordinator.register_device("zx-1", MagicMock())
        coordinator._handle_status_update("zx-1", entry(HEATING))
        clock.advance(1801)
        coordinator._cleanup_stale_active()

        coordinator._handle_status_update("zx-1", entry(HEATING))
        assert coordinator.is_device_active("zx-1") is False

        coordinator._handle_status_update("zx-1", entry(STANDBY))
        coordinator._handle_status_update("zx-1", entry(HEATING))
        assert coordinator.is_device_active("zx-1") is True

    def test_stale_device_repromoted_by_command(self, coordinator, clock):
        """Test a command re-activates a stale device."""
        coordinator.register_device("zx-1", MagicMock())
        coordinator._handle_status_update("zx-1", entry(HEATING))
        clock.advance(1801)
        coordinator._cleanup_stale_active()

        coordinator._handle_status_update("zx-1", entry(HEATING, CacheOrigin.INFERRED))

        assert coordinator.is_device_active("zx-1") is True

    def test_notify_device_inactive(self, coordinator):
        """Test manual demotion."""
        coordinator.register_device("zx-1", MagicMock())
        coordinator.notify_device_active("zx-1")

        coordinator.notify_device_inactive("zx-1")

        assert coordinator.is_device_active("zx-1") is False
        assert coordinator.is_device_active("unknown") is False


class TestOnDemandPolling:
    """Tests for immediate polls and refreshes."""

    @pytest.mark.asyncio
    async def test_trigger_immediate_poll(self, mock_api, coordinator):
        """Test every device is polled with a verified read."""
        coordinator.register_device("zx-1", MagicMock())
        coordinator.register_device("zx-2", MagicMock())
        coordinator.notify_device_active("zx-2")
        mock_api.get_device_status.return_value = STANDBY

        results = await coordinator.trigger_immediate_poll()

        assert results == {"zx-1": STANDBY, "zx-2": STANDBY}
        for call in mock_api.get_device_status.call_args_list:
            assert call.args[1] is True
            assert call.kwargs["priority"] is RequestPriority.NORMAL
        assert coordinator.get_active_devices() == []

    @pytest.mark.asyncio
    async def test_refresh_joins_imminent_fast_poll(self, mock_api, coordinator, clock):
        """Test a refresh waits for a fast poll due within the join threshold."""
        coordinator.register_device("zx-1", MagicMock())
        coordinator.notify_device_active("zx-1")
        cycle = asyncio.get_running_loop().create_future()
        coordinator._next_fast_cycle = cycle
        coordinator._next_fast_poll_at = clock() + 3
        asyncio.get_running_loop().call_soon(cycle.set_result, {"zx-1": HEATING})

        status = await coordinator.request_refresh("zx-1")

        assert status is HEATING
        mock_api.get_device_status.assert_not_called()

    @pytest.mark.asyncio
    async def test_refresh_reads_when_fast_poll_is_far(self, mock_api, coordinator, clock):
        """Test a refresh reads right away when the next fast poll is not imminent."""
        coordinator.register_device("zx-1", MagicMock())
        coordinator.notify_device_active("zx-1")
        coordinator._next_fast_cycle = asyncio.get_running_loop().create_future()
        coordinator._next_fast_poll_at = clock() + 30
        mock_api.get_device_status.return_value = HEATING

        status = await coordinator.request_refresh("zx-1")

        assert status is HEATING
        call = mock_api.get_device_status.call_args
        assert call.args == ("zx-1", True)
        assert call.kwargs["priority"] is RequestPriority.HIGH

    @pytest.mark.asyncio
    async def test_refresh_inactive_device(self, mock_api, coordinator):
        """Test inactive devices are read immediately."""
        coordinator.register_device("zx-1", MagicMock())
        mock_api.get_device_status.return_value = HEATING

        await coordinator.request_refresh("zx-1")

        assert mock_api.get_device_status.call_args.kwargs["priority"] is RequestPriority.HIGH
        assert coordinator.is_device_active("zx-1") is True

    @pytest.mark.asyncio
    async def test_refresh_unregistered_device(self, mock_api, coordinator):
        """Test refreshing an unknown device reads through the client."""
        await coordinator.request_refresh("zx-9")

        mock_api.get_device_status.assert_awaited_once_with("zx-9", force_fresh=True)
