"""Data models for the SleepMe client.

This module provides Pydantic models for the values exchanged between the
scheduler, the status cache and the API facade. Also includes the
temperature unit conversions and the tolerant status payload parser.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator, model_validator

from .constants import (
    API_BASE_URL,
    API_DEFAULTS,
    DEFAULT_TEMPERATURE_C,
    CacheConfidence,
    CacheOrigin,
    CompletionStatus,
    PowerState,
    ThermalState,
    UpdateContext,
)

_LOGGER = logging.getLogger(__name__)

# Status payload paths, first match wins
CURRENT_TEMPERATURE_PATHS = (
    "status.water_temperature_c",
    "water_temperature_c",
    "control.current_temperature_c",
    "current_temperature_c",
)
CURRENT_TEMPERATURE_F_PATHS = ("status.water_temperature_f", "water_temperature_f")
TARGET_TEMPERATURE_PATHS = ("control.set_temperature_c", "set_temperature_c")
TARGET_TEMPERATURE_F_PATHS = ("control.set_temperature_f", "set_temperature_f")
THERMAL_STATUS_PATHS = ("control.thermal_control_status", "thermal_control_status")
FIRMWARE_VERSION_PATHS = ("about.firmware_version", "firmware_version")
CONNECTED_PATHS = ("status.is_connected", "is_connected")
WATER_LEVEL_PATHS = ("status.water_level", "water_level")
WATER_LOW_PATHS = ("status.is_water_low", "is_water_low")


# Base model for all SleepMe data models
class SleepMeModel(BaseModel):
    """Base model for all SleepMe data structures."""

    model_config = {"validate_assignment": True, "populate_by_name": True}


def celsius_to_fahrenheit(celsius: float) -> float:
    """Convert Celsius to Fahrenheit without rounding."""
    return celsius * 9 / 5 + 32


def fahrenheit_to_celsius(fahrenheit: float) -> float:
    """Convert Fahrenheit to Celsius without rounding."""
    return (fahrenheit - 32) * 5 / 9


def to_outbound_fahrenheit(celsius: float) -> int:
    """Convert Celsius to the integer Fahrenheit value sent to the API.

    Rounds half up, so 22.5 °C (72.5 °F) is sent as 73.

    Example:
        >>> to_outbound_fahrenheit(21)
        70
    """
    return int(math.floor(celsius_to_fahrenheit(celsius) + 0.5))


def extract_nested_value(data: Mapping[str, Any], path: str) -> Any:
    """Get a value from nested mappings using a dotted path.

    Returns:
        The value, or None if any segment is missing.

    Example:
        >>> extract_nested_value({"status": {"is_connected": True}}, "status.is_connected")
        True
    """
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return None
        current = current[part]
    return current


def first_value(data: Mapping[str, Any], paths: tuple[str, ...]) -> Any:
    """Get the first non-None value among several candidate paths."""
    for path in paths:
        value = extract_nested_value(data, path)
        if value is not None:
            return value
    return None


def parse_number(value: Any) -> float | None:
    """Parse an API number, returning None if it is unusable."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _first_number(data: Mapping[str, Any], paths: tuple[str, ...]) -> float | None:
    for path in paths:
        number = parse_number(extract_nested_value(data, path))
        if number is not None:
            return number
    return None


def _parse_temperature(
    data: Mapping[str, Any], celsius_paths: tuple[str, ...], fahrenheit_paths: tuple[str, ...]
) -> float:
    celsius = _first_number(data, celsius_paths)
    if celsius is not None:
        return celsius
    fahrenheit = _first_number(data, fahrenheit_paths)
    if fahrenheit is not None:
        return fahrenheit_to_celsius(fahrenheit)
    return DEFAULT_TEMPERATURE_C


def reconcile_power_state(values: dict[str, Any]) -> dict[str, Any]:
    """Derive power_state from thermal_state in a dict of status fields.

    Active thermal states force power on and standby/off force power off.
    An unknown thermal state leaves power_state untouched.
    """
    thermal = values.get("thermal_state")
    if thermal is None:
        return values
    try:
        thermal = ThermalState(thermal)
    except ValueError:
        return values
    if thermal.is_active:
        values["power_state"] = PowerState.ON
    elif thermal.is_inactive:
        values["power_state"] = PowerState.OFF
    return values


class DeviceStatus(SleepMeModel):
    """Status of a single device.

    Immutable. power_state always agrees with thermal_state, whatever the
    caller passes in.

    Example:
        >>> status = DeviceStatus(thermal_state="heating", power_state="off")
        >>> status.power_state
        <PowerState.ON: 'on'>
    """

    model_config = {"frozen": True}

    current_temperature: float = Field(default=DEFAULT_TEMPERATURE_C, description="Water temperature in °C")
    target_temperature: float = Field(default=DEFAULT_TEMPERATURE_C, description="Set point in °C")
    thermal_state: ThermalState = Field(default=ThermalState.UNKNOWN, description="Thermal control status")
    power_state: PowerState = Field(default=PowerState.UNKNOWN, description="Derived power state")
    firmware_version: str | None = Field(default=None, description="Firmware version")
    connected: bool | None = Field(default=None, description="Cloud connectivity of the device")
    water_level: float | None = Field(default=None, description="Water level percentage")
    water_low: bool | None = Field(default=None, description="Low water warning")

    @model_validator(mode="before")
    @classmethod
    def _derive_power_state(cls, v):
        if isinstance(v, dict):
            return reconcile_power_state(dict(v))
        return v

    @property
    def is_active(self) -> bool:
        """Whether the device is powered and heating, cooling or active."""
        return self.power_state is PowerState.ON and self.thermal_state.is_active

    @classmethod
    def from_api(cls, payload: Any) -> DeviceStatus | None:
        """Parse a GET /devices/{id} response body.

        Unexpected shapes are logged and yield None instead of raising.
        """
        if not isinstance(payload, Mapping):
            _LOGGER.warning(
                "Unexpected device status payload of type %s", type(payload).__name__
            )
            return None

        thermal_state = ThermalState.UNKNOWN
        raw_status = first_value(payload, THERMAL_STATUS_PATHS)
        if isinstance(raw_status, str):
            mapped = ThermalState.from_api(raw_status)
            if mapped is None:
                _LOGGER.warning("Unrecognized thermal control status %r", raw_status)
            else:
                thermal_state = mapped
        elif raw_status is not None:
            _LOGGER.warning("Unexpected thermal control status value %r", raw_status)

        values: dict[str, Any] = {
            "current_temperature": _parse_temperature(
                payload, CURRENT_TEMPERATURE_PATHS, CURRENT_TEMPERATURE_F_PATHS
            ),
            "target_temperature": _parse_temperature(
                payload, TARGET_TEMPERATURE_PATHS, TARGET_TEMPERATURE_F_PATHS
            ),
            "thermal_state": thermal_state,
        }

        connected = first_value(payload, CONNECTED_PATHS)
        if isinstance(connected, bool):
            values["connected"] = connected
            if thermal_state is ThermalState.UNKNOWN:
                values["power_state"] = PowerState.ON if connected else PowerState.OFF

        firmware = first_value(payload, FIRMWARE_VERSION_PATHS)
        if firmware is not None:
            values["firmware_version"] = str(firmware)

        water_level = _first_number(payload, WATER_LEVEL_PATHS)
        if water_level is not None:
            values["water_level"] = water_level

        water_low = first_value(payload, WATER_LOW_PATHS)
        if isinstance(water_low, bool):
            values["water_low"] = water_low

        try:
            return cls(**values)
        except ValidationError as e:
            _LOGGER.warning("Could not build device status from payload: %s", e)
            return None


class Device(SleepMeModel):
    """A device returned by GET /devices."""

    model_config = {"frozen": True}

    id: str = Field(..., min_length=1, description="Device identifier")
    name: str = Field(default="SleepMe Device", description="Human-readable device name")
    attachments: list[str] = Field(default_factory=list, description="Attached accessories")

    @classmethod
    def from_api_dict(cls, device_dict: Any) -> Device | None:
        """Parse a device entry, returning None if it has no id."""
        if not isinstance(device_dict, Mapping):
            return None
        device_id = device_dict.get("id")
        if not device_id:
            return None
        attachments = device_dict.get("attachments")
        try:
            return cls(
                id=str(device_id),
                name=device_dict.get("name") or "SleepMe Device",
                attachments=[str(a) for a in attachments] if isinstance(attachments, list) else [],
            )
        except (ValueError, TypeError):
            return None


class DevicesResponse(SleepMeModel):
    """Response model for GET /devices.

    The API returns either a bare list or an object with a ``devices`` key.
    """

    model_config = {"frozen": True}

    devices: list[Device] = Field(default_factory=list, description="Devices on the account")

    @classmethod
    def from_api(cls, response_data: Any) -> DevicesResponse:
        """Build a devices response from the raw API payload."""
        if isinstance(response_data, list):
            raw_devices = response_data
        elif isinstance(response_data, Mapping) and isinstance(response_data.get("devices"), list):
            raw_devices = response_data["devices"]
        else:
            _LOGGER.warning("Unexpected device list payload: %r", response_data)
            raw_devices = []

        devices = []
        for device_dict in raw_devices:
            device = Device.from_api_dict(device_dict)
            if device is None:
                _LOGGER.warning("Dropping device entry without id: %r", device_dict)
                continue
            devices.append(device)
        return cls(devices=devices)


class CacheEntry(SleepMeModel):
    """Best known status of one device plus how much it is trusted."""

    model_config = {"frozen": True}

    device_id: str = Field(..., min_length=1, description="Device identifier")
    status: DeviceStatus = Field(..., description="Cached device status")
    captured_at: float = Field(..., description="Monotonic time the entry was written")
    is_optimistic: bool = Field(default=False, description="Written before the server confirmed it")
    confidence: CacheConfidence = Field(default=CacheConfidence.HIGH)
    origin: CacheOrigin = Field(default=CacheOrigin.VERIFIED_READ)
    context: UpdateContext = Field(default=UpdateContext.SYSTEM)

    def age(self, now: float) -> float:
        """Seconds since the entry was written."""
        return max(0.0, now - self.captured_at)


class RateLimitDecision(SleepMeModel):
    """Answer of the rate limiter for one dispatch attempt."""

    model_config = {"frozen": True}

    allowed: bool
    wait_seconds: float = Field(default=0.0, ge=0.0, description="Suggested wait before asking again")
    reason: str = ""
    tokens_remaining: float = Field(default=0.0, ge=0.0)


class RequestResult(SleepMeModel):
    """Resolution of a scheduled request, shared by every waiter."""

    model_config = {"frozen": True}

    status: CompletionStatus
    data: Any = None

    @property
    def has_data(self) -> bool:
        """Whether the response body is available."""
        return self.status is CompletionStatus.COMPLETED

    @property
    def accepted(self) -> bool:
        """Whether a write can be treated as applied by the server."""
        return self.status in (
            CompletionStatus.COMPLETED,
            CompletionStatus.ASSUMED,
            CompletionStatus.SUPERSEDED,
        )


class ApiStats(SleepMeModel):
    """Request statistics of the API client."""

    total_requests: int = Field(default=0, ge=0)
    successful_requests: int = Field(default=0, ge=0)
    failed_requests: int = Field(default=0, ge=0)
    rate_limited_requests: int = Field(default=0, ge=0)
    last_request: datetime | None = None
    last_error: str | None = None
    last_error_time: datetime | None = None
    average_response_time: float = Field(default=0.0, ge=0.0, description="EMA of response time in seconds")

    def record_request(self) -> None:
        """Count a request sent to the API."""
        self.total_requests += 1
        self.last_request = datetime.now()

    def record_success(self, duration: float) -> None:
        """Count a successful response and update the moving average."""
        self.successful_requests += 1
        if self.average_response_time == 0:
            self.average_response_time = duration
        else:
            self.average_response_time = self.average_response_time * 0.9 + duration * 0.1

    def record_failure(self, error: Exception, rate_limited: bool = False) -> None:
        """Count a failed response."""
        self.failed_requests += 1
        if rate_limited:
            self.rate_limited_requests += 1
        self.last_error = str(error) or type(error).__name__
        self.last_error_time = datetime.now()


class ClientOptions(SleepMeModel):
    """User facing options used to build a client."""

    api_token: SecretStr = Field(..., description="Bearer token of the SleepMe developer API")
    base_url: str = Field(default=API_BASE_URL)
    polling_interval: float = Field(default=API_DEFAULTS.POLLING_INTERVAL, ge=60.0, le=3600.0)
    rate_limiter_preset: Literal["token_bucket", "conservative", "discrete_window"] = "token_bucket"

    @field_validator("api_token")
    @classmethod
    def _token_not_blank(cls, v: SecretStr) -> SecretStr:
        if not v.get_secret_value().strip():
            raise ValueError("API token cannot be empty")
        return v
