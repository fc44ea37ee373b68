# sleepme_api.py
"""Client for the SleepMe developer API.

Every call goes through the request scheduler, so callers never have to
care about the rate limit. Reads are served from the status cache while it
is trusted, writes update the cache from the acknowledged command.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

import aiohttp

from .access_tracker import AccessTracker
from .constants import (
    API_BASE_URL,
    API_DEFAULTS,
    DEFAULT_TEMPERATURE_C,
    PAYLOAD_SET_TEMPERATURE_F,
    PAYLOAD_THERMAL_STATUS,
    APIDefaults,
    CompletionStatus,
    OperationType,
    RequestPriority,
    ThermalState,
    UpdateContext,
)
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
    api_get,
    api_patch,
)
from .models import (
    ApiStats,
    CacheEntry,
    ClientOptions,
    Device,
    DevicesResponse,
    DeviceStatus,
    RequestResult,
    parse_number,
    to_outbound_fahrenheit,
)
from .validators import validate_api_token, validate_device_id, validate_temperature

_LOGGER = logging.getLogger(__name__)

StatusListener = Callable[[str, CacheEntry], None]

# Read results that still allow serving the cached status
_CACHE_SERVABLE = (
    CompletionStatus.CANCELLED,
    CompletionStatus.SUPERSEDED,
    CompletionStatus.SKIPPED,
)


class SleepMeAPI:
    """Rate limited client for SleepMe Dock Pro devices.

    Attributes:
        base_url: API root without trailing slash.
    """

    def __init__(
        self,
        api_token: str,
        base_url: str = API_BASE_URL,
        *,
        rate_limiter: TokenBucketRateLimiter | None = None,
        cache: StatusCache | None = None,
        scheduler: RequestScheduler | None = None,
        defaults: APIDefaults = API_DEFAULTS,
        session: aiohttp.ClientSession | None = None,
    ):
        """Initialize the client.

        Args:
            api_token: Bearer token of the developer API.
            base_url: API root.
            rate_limiter: Limiter shared with the scheduler.
            cache: Status cache.
            scheduler: Request scheduler (default: built on ``rate_limiter``).
                A given scheduler brings its own rate limiter.
            defaults: Timeouts and retry budgets.
            session: Externally managed aiohttp session.

        Raises:
            SleepMeAuthError: If the token is missing or blank.
            ValueError: If ``rate_limiter`` is not the one of ``scheduler``.
        """
        is_valid, error = validate_api_token(api_token)
        if not is_valid:
            _LOGGER.error("Cannot create SleepMe client: %s", error)
            raise SleepMeAuthError(error)

        if scheduler is not None and rate_limiter is not None and rate_limiter is not scheduler.rate_limiter:
            raise ValueError("rate_limiter must be the scheduler's own rate limiter")

        self.base_url = base_url.rstrip("/")
        self._api_token = api_token.strip()
        if scheduler is not None:
            self._rate_limiter = scheduler.rate_limiter
            self._scheduler = scheduler
        else:
            self._rate_limiter = rate_limiter or TokenBucketRateLimiter()
            self._scheduler = RequestScheduler(self._rate_limiter, defaults=defaults)
        self._cache = cache or StatusCache()
        self._session = session
        self._owns_session = session is None
        self._stats = ApiStats()
        self._access_tracker = AccessTracker()
        self._status_listeners: list[StatusListener] = []
        self._startup_complete = False
        self._initial_discovery_complete = False

    @classmethod
    def from_options(cls, options: ClientOptions, **kwargs: Any) -> SleepMeAPI:
        """Build a client from validated options."""
        limiter = TokenBucketRateLimiter(RateLimiterConfig.preset(options.rate_limiter_preset))
        return cls(
            options.api_token.get_secret_value(),
            options.base_url,
            rate_limiter=limiter,
            **kwargs,
        )

    @property
    def rate_limiter(self) -> TokenBucketRateLimiter:
        return self._rate_limiter

    @property
    def scheduler(self) -> RequestScheduler:
        return self._scheduler

    @property
    def cache(self) -> StatusCache:
        return self._cache

    @property
    def sustainable_request_rate(self) -> float:
        """Requests per second the rate limiter can sustain."""
        return self._rate_limiter.refill_rate

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session.

        Timeouts are set per request since they depend on the priority.
        """
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Stop the scheduler and close the aiohttp session."""
        await self._scheduler.stop()
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    # -------------------------------------------------------------------------
    # Startup control
    # -------------------------------------------------------------------------

    def mark_startup_complete(self) -> None:
        """Raise discovery from LOW to NORMAL priority."""
        self._startup_complete = True
        _LOGGER.info("Startup complete, discovery now uses %s priority", self._discovery_priority().label)

    def mark_initial_discovery_complete(self) -> None:
        """Raise discovery to HIGH priority, later discoveries are user driven."""
        self._initial_discovery_complete = True
        _LOGGER.info("Initial discovery complete, discovery now uses high priority")

    def _discovery_priority(self) -> RequestPriority:
        if self._initial_discovery_complete:
            return RequestPriority.HIGH
        if self._startup_complete:
            return RequestPriority.NORMAL
        return RequestPriority.LOW

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def _async_execute_request(
        self,
        method: str,
        url: str,
        payload: dict[str, Any] | None,
        priority: RequestPriority,
        timeout: float,
    ) -> Any:
        """Perform one HTTP call. Only ever called by the scheduler.

        Returns:
            Decoded JSON body, or None for an empty body.

        Raises:
            SleepMeRateLimitError: On HTTP 429.
            SleepMeAuthError: On HTTP 401/403.
            SleepMeAPIError: On any other HTTP error status.
            SleepMeTimeoutError: If the call exceeds ``timeout``.
            SleepMeConnectionError: On network failures.
        """
        session = await self._get_session()
        headers = {
            "Authorization": f"Bearer {self._api_token}",
            "Accept": "application/json",
        }
        self._stats.record_request()
        self._access_tracker.record_access(priority.label)
        started = time.monotonic()

        try:
            async with session.request(
                method,
                url,
                json=payload,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                status = response.status
                retry_after = response.headers.get("Retry-After") if status == 429 else None
                data = await self._read_body(response, method, url) if status < 400 else None
        except asyncio.TimeoutError as e:
            error: SleepMeError = SleepMeTimeoutError(f"{method} {url} timed out after {timeout:.0f}s")
            self._stats.record_failure(error)
            raise error from e
        except aiohttp.ClientError as e:
            error = SleepMeConnectionError(f"{method} {url} failed: {e}")
            self._stats.record_failure(error)
            raise error from e

        if status == 429:
            error = SleepMeRateLimitError(
                f"{method} {url} rate limited", retry_after=parse_number(retry_after)
            )
        elif status in (401, 403):
            error = SleepMeAuthError(f"{method} {url} rejected the API token (HTTP {status})")
        elif status >= 400:
            error = SleepMeAPIError(f"{method} {url} returned HTTP {status}", status=status)
        else:
            self._stats.record_success(time.monotonic() - started)
            _LOGGER.debug("API %s %s returned HTTP %s", method, url, status)
            return data

        self._stats.record_failure(error, rate_limited=isinstance(error, SleepMeRateLimitError))
        raise error

    @staticmethod
    async def _read_body(response: aiohttp.ClientResponse, method: str, url: str) -> Any:
        try:
            return await response.json(content_type=None)
        except (aiohttp.ContentTypeError, ValueError) as e:
            if method == "GET":
                raise SleepMeParseError(f"Undecodable response body from {url}: {e}") from e
            # A write acknowledgement needs no body
            _LOGGER.debug("Ignoring undecodable response body from %s: %s", url, e)
            return None

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_devices(self) -> list[Device]:
        """List the devices of the account.

        Returns:
            Devices with an id; an empty list on failure.
        """
        priority = self._discovery_priority()
        try:
            devices = await self._async_fetch_devices(priority=priority)
        except SleepMeError as e:
            self._log_failure("Fetching devices", e, priority)
            return []
        _LOGGER.debug("Found %d devices", len(devices))
        return devices

    @api_get("/devices", operation=OperationType.LIST_DEVICES, default_priority=RequestPriority.LOW)
    async def _async_fetch_devices(self, result: RequestResult) -> list[Device]:
        if not result.has_data:
            _LOGGER.debug("Device list request resolved as %s", result.status.value)
            return []
        return DevicesResponse.from_api(result.data).devices

    async def get_device_status(
        self,
        device_id: str,
        force_fresh: bool = False,
        *,
        priority: RequestPriority | None = None,
        raise_on_error: bool = False,
    ) -> DeviceStatus | None:
        """Get the status of a device.

        A trusted cache entry is returned without calling the API unless
        ``force_fresh`` is set. When retries are exhausted because of rate
        limiting, a stale entry within the emergency window is returned.

        Args:
            device_id: Device to read.
            force_fresh: Skip the cache.
            priority: Request priority (default: HIGH when forced, else NORMAL).
            raise_on_error: Raise terminal errors instead of returning None.

        Returns:
            The status, or None when no data is available.

        Raises:
            SleepMeValidationError: If the device id is invalid.
        """
        self._require_valid_device(device_id)

        if not force_fresh:
            entry = self._cache.get(device_id)
            if entry is not None and self._cache.is_valid(
                entry, backoff_active=self._rate_limiter.backoff_active
            ):
                _LOGGER.debug("Using cached status for %s (%s)", device_id, entry.origin.value)
                return entry.status

        if priority is None:
            priority = RequestPriority.HIGH if force_fresh else RequestPriority.NORMAL

        try:
            return await self._async_fetch_device_status(device_id, priority=priority)
        except SleepMeRateLimitError as e:
            fallback = self._emergency_fallback(device_id)
            if fallback is not None:
                return fallback
            if raise_on_error:
                raise
            self._log_failure(f"Reading status of {device_id}", e, priority)
            return None
        except SleepMeError as e:
            if raise_on_error:
                raise
            self._log_failure(f"Reading status of {device_id}", e, priority)
            return None

    @api_get("/devices/{device_id}")
    async def _async_fetch_device_status(self, result: RequestResult, device_id: str) -> DeviceStatus | None:
        if not result.has_data:
            _LOGGER.debug("Status read for %s resolved as %s", device_id, result.status.value)
            entry = self._cache.get(device_id)
            if entry is not None and result.status in _CACHE_SERVABLE:
                return entry.status
            return None

        status = DeviceStatus.from_api(result.data)
        if status is None:
            return None
        entry = self._cache.put_verified(device_id, status)
        self._notify_status_listeners(device_id, entry)
        return status

    def _emergency_fallback(self, device_id: str) -> DeviceStatus | None:
        entry = self._cache.get(device_id)
        if entry is None or not self._cache.is_within_emergency_window(entry):
            return None
        _LOGGER.warning(
            "Rate limit retries exhausted for %s, serving cached status (%s)",
            device_id,
            entry.origin.value,
        )
        return entry.status

    def get_last_known_temperature(self, device_id: str, default: float | None = None) -> float | None:
        """Get the last known target temperature without calling the API."""
        return self._cache.last_known_temperature(device_id, default)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def turn_on(
        self,
        device_id: str,
        temperature: float | None = None,
        *,
        context: UpdateContext = UpdateContext.USER,
    ) -> bool:
        """Turn a device on at a target temperature (default 21 °C).

        Returns:
            True if the command was accepted.
        """
        target = DEFAULT_TEMPERATURE_C if temperature is None else temperature
        self._require_valid_device(device_id)
        self._require_valid_temperature(target)
        return await self._async_send_command(
            device_id,
            {"thermal_state": ThermalState.ACTIVE, "target_temperature": target},
            context,
            thermal_status="active",
            temperature=target,
        )

    async def turn_off(
        self, device_id: str, *, context: UpdateContext = UpdateContext.USER
    ) -> bool:
        """Put a device into standby.

        Returns:
            True if the command was accepted.
        """
        self._require_valid_device(device_id)
        return await self._async_send_command(
            device_id,
            {"thermal_state": ThermalState.STANDBY},
            context,
            thermal_status="standby",
        )

    async def set_temperature(
        self,
        device_id: str,
        temperature: float,
        *,
        context: UpdateContext = UpdateContext.USER,
    ) -> bool:
        """Set the target temperature, turning the device on.

        Returns:
            True if the command was accepted.
        """
        self._require_valid_device(device_id)
        self._require_valid_temperature(temperature)
        return await self._async_send_command(
            device_id,
            {"thermal_state": ThermalState.ACTIVE, "target_temperature": temperature},
            context,
            thermal_status="active",
            temperature=temperature,
        )

    async def turn_on_for_schedule(self, device_id: str, temperature: float) -> bool:
        """Turn a device on from a schedule event."""
        return await self.turn_on(device_id, temperature, context=UpdateContext.SCHEDULE)

    async def set_temperature_for_schedule(self, device_id: str, temperature: float) -> bool:
        """Set a temperature from a schedule event."""
        return await self.set_temperature(device_id, temperature, context=UpdateContext.SCHEDULE)

    def cancel_device_requests(self, device_id: str) -> int:
        """Cancel every pending request of a device."""
        return self._scheduler.cancel_device_requests(device_id)

    async def _async_send_command(
        self,
        device_id: str,
        cache_update: dict[str, Any],
        context: UpdateContext,
        **patch_kwargs: Any,
    ) -> bool:
        # Schedules are not a user waiting in front of a switch
        priority = RequestPriority.CRITICAL if context is UpdateContext.USER else RequestPriority.HIGH
        try:
            result = await self._async_patch_device(device_id, priority=priority, **patch_kwargs)
        except SleepMeError as e:
            self._log_failure(f"Command {patch_kwargs} for {device_id}", e, priority)
            return False

        # A newer command for the device replaced this one, before or while it ran
        if result.status in (CompletionStatus.SUPERSEDED, CompletionStatus.CANCELLED):
            _LOGGER.debug("Command for %s was overtaken by a newer one", device_id)
            return True
        if not result.accepted:
            _LOGGER.info("Command for %s was not sent (%s)", device_id, result.status.value)
            return False

        optimistic = result.status is CompletionStatus.ASSUMED
        entry = self._cache.put_command_derived(device_id, cache_update, context, optimistic=optimistic)
        self._notify_status_listeners(device_id, entry)
        return True

    @api_patch("/devices/{device_id}")
    async def _async_patch_device(
        self,
        device_id: str,
        thermal_status: str | None = None,
        temperature: float | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if thermal_status is not None:
            payload[PAYLOAD_THERMAL_STATUS] = thermal_status
        if temperature is not None:
            payload[PAYLOAD_SET_TEMPERATURE_F] = to_outbound_fahrenheit(temperature)
        return payload

    # -------------------------------------------------------------------------
    # Listeners and helpers
    # -------------------------------------------------------------------------

    def add_status_listener(self, listener: StatusListener) -> Callable[[], None]:
        """Call ``listener(device_id, entry)`` after every cache update.

        Returns:
            Function removing the listener.
        """
        self._status_listeners.append(listener)

        def _remove() -> None:
            if listener in self._status_listeners:
                self._status_listeners.remove(listener)

        return _remove

    def _notify_status_listeners(self, device_id: str, entry: CacheEntry) -> None:
        for listener in list(self._status_listeners):
            try:
                listener(device_id, entry)
            except Exception:
                _LOGGER.exception("Status listener failed for %s", device_id)

    def _require_valid_device(self, device_id: str) -> None:
        is_valid, error = validate_device_id(device_id)
        if not is_valid:
            raise SleepMeValidationError(error)

    def _require_valid_temperature(self, temperature: float) -> None:
        is_valid, error = validate_temperature(temperature)
        if not is_valid:
            raise SleepMeValidationError(error)

    def _log_failure(self, action: str, err: Exception, priority: RequestPriority) -> None:
        if isinstance(err, SleepMeAuthError) or priority <= RequestPriority.HIGH:
            _LOGGER.error("%s failed: %s", action, err)
        else:
            _LOGGER.warning("%s failed: %s", action, err)

    @property
    def stats(self) -> ApiStats:
        """Request statistics."""
        return self._stats

    def get_stats(self) -> dict:
        """Get request, rate limiter, queue and cache statistics."""
        return {
            "requests": self._stats.model_dump(),
            "accesses": self._access_tracker.get_summary(),
            "rate_limiter": self._rate_limiter.get_status(),
            "queue": self._scheduler.get_queue_status(),
            "cache": self._cache.get_stats(),
        }
