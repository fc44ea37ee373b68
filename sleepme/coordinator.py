# coordinator.py
"""Adaptive polling of registered SleepMe devices.

Two cadences run side by side. The slow cadence polls every inactive
device and forces a verified read only on every other cycle. The fast
cadence polls heating or cooling devices with a verified read on every
cycle, spaced so the rate limiter can sustain it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from .constants import API_DEFAULTS, APIDefaults, CacheOrigin, RequestPriority
from .infrastructure import SleepMeError
from .models import CacheEntry, ClientOptions, DeviceStatus
from .sleepme_api import SleepMeAPI

_LOGGER = logging.getLogger(__name__)

StatusCallback = Callable[[str, DeviceStatus], None]
ErrorCallback = Callable[[str, Exception], None]


@dataclass
class PollingDevice:
    """Polling state of one registered device."""

    device_id: str
    on_status_update: StatusCallback
    on_error: ErrorCallback | None = None
    active_since: float | None = None
    # Demoted by the active ceiling, ignored as active until seen inactive
    stale_active: bool = False
    last_status: DeviceStatus | None = None
    last_poll: float | None = None
    poll_count: int = 0
    error_count: int = 0

    @property
    def is_active(self) -> bool:
        return self.active_since is not None


class PollingCoordinator:
    """Polls registered devices on a slow and a fast cadence.

    Devices move to the fast cadence when a poll or a command shows them
    heating, cooling or active and move back when a poll shows otherwise.

    Attributes:
        polling_interval: Slow cadence interval in seconds.
    """

    def __init__(
        self,
        api: SleepMeAPI,
        *,
        polling_interval: float | None = None,
        defaults: APIDefaults = API_DEFAULTS,
        auto_start: bool = True,
        clock: Callable[[], float] | None = None,
    ):
        """Initialize the coordinator.

        Args:
            api: Client used for every status read.
            polling_interval: Slow cadence interval (default from ``defaults``).
            defaults: Polling intervals and thresholds.
            auto_start: Start polling when the first device registers.
            clock: Monotonic time source.
        """
        self._api = api
        self._defaults = defaults
        self.polling_interval = polling_interval or defaults.POLLING_INTERVAL
        self._auto_start = auto_start
        self._clock = clock or time.monotonic

        self._devices: dict[str, PollingDevice] = {}
        self._tasks: list[asyncio.Task] = []
        self._stop_event = asyncio.Event()
        self._active_changed = asyncio.Event()
        self._slow_cycles = 0
        self._fast_cycles = 0
        self._next_fast_poll_at: float | None = None
        self._next_fast_cycle: asyncio.Future | None = None

        self._remove_listener = api.add_status_listener(self._handle_status_update)

    @classmethod
    def from_options(
        cls, options: ClientOptions, api: SleepMeAPI | None = None, **kwargs
    ) -> PollingCoordinator:
        """Build a coordinator (and its client, unless given) from validated options."""
        if api is None:
            api = SleepMeAPI.from_options(options)
        return cls(api, polling_interval=options.polling_interval, **kwargs)

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register_device(
        self,
        device_id: str,
        on_status_update: StatusCallback,
        on_error: ErrorCallback | None = None,
    ) -> None:
        """Add a device to polling.

        A device registered twice keeps its state and gets the new callbacks.
        """
        device = self._devices.get(device_id)
        if device is not None:
            device.on_status_update = on_status_update
            device.on_error = on_error
            _LOGGER.debug("Updated callbacks of %s", device_id)
        else:
            self._devices[device_id] = PollingDevice(device_id, on_status_update, on_error)
            _LOGGER.info("Registered %s for polling (%d devices)", device_id, len(self._devices))

        if self._auto_start and not self.is_running:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                _LOGGER.debug("No running event loop, polling starts with start()")
                return
            self.start()

    def unregister_device(self, device_id: str) -> None:
        """Remove a device from polling. Polling stops with the last device."""
        if self._devices.pop(device_id, None) is None:
            return
        _LOGGER.info("Unregistered %s from polling", device_id)
        if not self._devices and self.is_running:
            self._stop_event.set()
            self._active_changed.set()
            for task in self._tasks:
                task.cancel()
            self._tasks = []
            _LOGGER.info("No devices left, polling stopped")

    def validate_cached_devices(self, known_device_ids: Iterable[str]) -> list[str]:
        """Unregister devices the account no longer lists.

        Returns:
            Ids of the removed devices.
        """
        known = set(known_device_ids)
        removed = [device_id for device_id in self._devices if device_id not in known]
        for device_id in removed:
            _LOGGER.warning("Device %s no longer exists, removing it from polling", device_id)
            self.unregister_device(device_id)
        return removed

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        """Start both cadences. Must be called from the event loop."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._active_changed.clear()
        self._tasks = [
            asyncio.create_task(self._run_slow_cadence(), name="sleepme-slow-poll"),
            asyncio.create_task(self._run_fast_cadence(), name="sleepme-fast-poll"),
        ]
        _LOGGER.info(
            "Polling started: slow every %.0fs, fast at most every %.0fs",
            self.polling_interval,
            self.fast_interval,
        )

    async def stop(self) -> None:
        """Stop both cadences and wait for them to finish."""
        self._stop_event.set()
        self._active_changed.set()
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            _LOGGER.info("Polling stopped")

    async def cleanup(self) -> None:
        """Stop polling and detach from the client."""
        await self.stop()
        self._remove_listener()
        self._devices.clear()

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless stopped. Returns True if the coordinator was stopped."""
        if seconds <= 0:
            return self._stop_event.is_set()
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    # -------------------------------------------------------------------------
    # Cadences
    # -------------------------------------------------------------------------

    @property
    def fast_interval(self) -> float:
        """Fast cadence interval matching the sustainable request rate."""
        active = max(len(self.get_active_devices()), 1)
        rate = self._api.sustainable_request_rate
        if rate <= 0:
            return self.polling_interval
        return max(self._defaults.MIN_ACTIVE_POLLING_INTERVAL, active / rate)

    async def _run_slow_cadence(self) -> None:
        if await self._sleep(self._defaults.INITIAL_POLL_DELAY):
            return
        while not self._stop_event.is_set():
            await self._async_poll_slow_cycle()
            if await self._sleep(self.polling_interval):
                return

    async def _run_fast_cadence(self) -> None:
        loop = asyncio.get_running_loop()
        while not self._stop_event.is_set():
            if not self.get_active_devices():
                self._active_changed.clear()
                await self._active_changed.wait()
                continue

            interval = self.fast_interval
            cycle = loop.create_future()
            self._next_fast_cycle = cycle
            self._next_fast_poll_at = self._clock() + interval
            results: dict[str, DeviceStatus | None] = {}
            try:
                if await self._sleep(interval):
                    return
                self._next_fast_poll_at = None
                results = await self._async_poll_fast_cycle()
            finally:
                self._next_fast_poll_at = None
                self._next_fast_cycle = None
                if not cycle.done():
                    cycle.set_result(results)

    async def _async_poll_slow_cycle(self) -> dict[str, DeviceStatus | None]:
        """Poll every inactive device once."""
        self._slow_cycles += 1
        self._cleanup_stale_active()
        # Every other cycle goes to the server to pick up out of band changes
        force_fresh = self._slow_cycles % 2 == 0
        devices = [device for device in self._devices.values() if not device.is_active]
        _LOGGER.debug(
            "Slow cycle %d: %d devices, force_fresh=%s", self._slow_cycles, len(devices), force_fresh
        )
        return await self._async_poll_devices(devices, force_fresh=force_fresh, priority=RequestPriority.LOW)

    async def _async_poll_fast_cycle(self) -> dict[str, DeviceStatus | None]:
        """Poll every active device with a verified read."""
        self._fast_cycles += 1
        self._cleanup_stale_active()
        devices = [device for device in self._devices.values() if device.is_active]
        _LOGGER.debug("Fast cycle %d: %d devices", self._fast_cycles, len(devices))
        return await self._async_poll_devices(devices, force_fresh=True, priority=RequestPriority.NORMAL)

    async def _async_poll_devices(
        self,
        devices: list[PollingDevice],
        *,
        force_fresh: bool,
        priority: RequestPriority,
    ) -> dict[str, DeviceStatus | None]:
        results: dict[str, DeviceStatus | None] = {}
        for index, device in enumerate(devices):
            if index and await self._sleep(self._defaults.INTER_DEVICE_DELAY):
                break
            if device.device_id not in self._devices:
                continue
            results[device.device_id] = await self._async_poll_device(
                device, force_fresh=force_fresh, priority=priority
            )
        return results

    async def _async_poll_device(
        self,
        device: PollingDevice,
        *,
        force_fresh: bool,
        priority: RequestPriority,
    ) -> DeviceStatus | None:
        device.last_poll = self._clock()
        device.poll_count += 1
        try:
            status = await self._api.get_device_status(
                device.device_id, force_fresh, priority=priority, raise_on_error=True
            )
        except SleepMeError as e:
            device.error_count += 1
            _LOGGER.warning("Polling %s failed: %s", device.device_id, e)
            if device.on_error is not None:
                try:
                    device.on_error(device.device_id, e)
                except Exception:
                    _LOGGER.exception("Error callback failed for %s", device.device_id)
            return None

        if status is None:
            return None
        self._observe(device, status)
        try:
            device.on_status_update(device.device_id, status)
        except Exception:
            _LOGGER.exception("Status callback failed for %s", device.device_id)
        return status

    # -------------------------------------------------------------------------
    # Activity tracking
    # -------------------------------------------------------------------------

    def _handle_status_update(self, device_id: str, entry: CacheEntry) -> None:
        device = self._devices.get(device_id)
        if device is None:
            return
        self._observe(device, entry.status, from_command=entry.origin is not CacheOrigin.VERIFIED_READ)

    def _observe(self, device: PollingDevice, status: DeviceStatus, *, from_command: bool = False) -> None:
        device.last_status = status
        if not status.is_active:
            device.stale_active = False
            self._set_inactive(device)
            return
        if device.stale_active and not from_command:
            return
        device.stale_active = False
        self._set_active(device)

    def _set_active(self, device: PollingDevice) -> None:
        if device.is_active:
            return
        device.active_since = self._clock()
        self._active_changed.set()
        _LOGGER.info("%s is active, moving it to the fast cadence", device.device_id)

    def _set_inactive(self, device: PollingDevice) -> None:
        if not device.is_active:
            return
        device.active_since = None
        _LOGGER.info("%s is inactive, moving it to the slow cadence", device.device_id)

    def _cleanup_stale_active(self) -> None:
        now = self._clock()
        for device in self._devices.values():
            if device.is_active and now - device.active_since > self._defaults.MAX_ACTIVE_DURATION:
                _LOGGER.warning(
                    "%s reported active for over %.0f minutes, moving it to the slow cadence",
                    device.device_id,
                    self._defaults.MAX_ACTIVE_DURATION / 60,
                )
                device.active_since = None
                device.stale_active = True

    def notify_device_active(self, device_id: str) -> None:
        """Move a device to the fast cadence, e.g. after turning it on."""
        device = self._devices.get(device_id)
        if device is None:
            return
        device.stale_active = False
        self._set_active(device)

    def notify_device_inactive(self, device_id: str) -> None:
        """Move a device to the slow cadence, e.g. after turning it off."""
        device = self._devices.get(device_id)
        if device is not None:
            self._set_inactive(device)

    def is_device_active(self, device_id: str) -> bool:
        device = self._devices.get(device_id)
        return device is not None and device.is_active

    def get_active_devices(self) -> list[str]:
        return [device.device_id for device in self._devices.values() if device.is_active]

    # -------------------------------------------------------------------------
    # On demand polling
    # -------------------------------------------------------------------------

    async def trigger_immediate_poll(self) -> dict[str, DeviceStatus | None]:
        """Poll every registered device now with a verified read."""
        _LOGGER.debug("Immediate poll of %d devices", len(self._devices))
        return await self._async_poll_devices(
            list(self._devices.values()), force_fresh=True, priority=RequestPriority.NORMAL
        )

    async def request_refresh(self, device_id: str) -> DeviceStatus | None:
        """Refresh one device after a user action.

        An active device whose next fast poll is due within the join
        threshold waits for that poll instead of reading twice.
        """
        device = self._devices.get(device_id)
        if device is None:
            return await self._api.get_device_status(device_id, force_fresh=True)

        cycle = self._next_fast_cycle
        poll_at = self._next_fast_poll_at
        if device.is_active and cycle is not None and poll_at is not None:
            remaining = poll_at - self._clock()
            if remaining <= self._defaults.POLL_JOIN_THRESHOLD:
                _LOGGER.debug("Refresh of %s joins the fast poll in %.1fs", device_id, remaining)
                results = await asyncio.shield(cycle)
                if device_id in results:
                    return results[device_id]

        return await self._async_poll_device(device, force_fresh=True, priority=RequestPriority.HIGH)

    def get_stats(self) -> dict:
        """Get polling statistics."""
        return {
            "running": self.is_running,
            "registered_devices": len(self._devices),
            "active_devices": self.get_active_devices(),
            "stale_active_devices": [d.device_id for d in self._devices.values() if d.stale_active],
            "polling_interval": self.polling_interval,
            "fast_interval": self.fast_interval,
            "slow_cycles": self._slow_cycles,
            "fast_cycles": self._fast_cycles,
            "devices": {
                d.device_id: {"polls": d.poll_count, "errors": d.error_count, "last_poll": d.last_poll}
                for d in self._devices.values()
            },
        }
