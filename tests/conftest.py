"""Common fixtures for SleepMe tests."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from sleepme.constants import APIDefaults, RequestPriority
from sleepme.models import RateLimitDecision


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRateLimiter:
    """Rate limiter that allows everything until closed."""

    def __init__(self):
        self.open = True
        self.backoff_active = False
        self.refill_rate = 1 / 15
        self.decisions: list[RequestPriority] = []
        self.outcomes: list[tuple[RequestPriority, bool, bool]] = []

    def decide(self, priority: RequestPriority) -> RateLimitDecision:
        if not self.open:
            return RateLimitDecision(allowed=False, wait_seconds=0.01, reason="closed")
        self.decisions.append(priority)
        return RateLimitDecision(allowed=True, reason="open")

    def record_outcome(self, priority, succeeded, was_rate_limited):
        self.outcomes.append((priority, succeeded, was_rate_limited))

    def get_status(self) -> dict:
        return {"open": self.open}


def make_response(status: int = 200, json_data=None, headers=None, json_error=None):
    """Create a mocked aiohttp response usable as an async context manager."""
    mock_response = MagicMock()
    mock_response.status = status
    mock_response.headers = headers or {}
    if json_error is not None:
        mock_response.json = AsyncMock(side_effect=json_error)
    else:
        mock_response.json = AsyncMock(return_value=json_data)
    return AsyncMock(
        __aenter__=AsyncMock(return_value=mock_response),
        __aexit__=AsyncMock(return_value=False),
    )


def make_session(*responses):
    """Create a mocked aiohttp session returning the given responses in order."""
    mock_session = MagicMock()
    mock_session.closed = False
    mock_session.close = AsyncMock()
    mock_session.request = MagicMock(side_effect=list(responses))
    return mock_session


@pytest.fixture
def fake_clock():
    """Create a fake monotonic clock."""
    return FakeClock()


@pytest.fixture
def fake_rate_limiter():
    """Create a rate limiter that allows every request."""
    return FakeRateLimiter()


@pytest.fixture
def fast_defaults():
    """API defaults without retry or pacing delays."""
    return APIDefaults(
        RETRY_BASE_DELAY=0.0,
        RATE_LIMIT_BACKOFF=0.0,
        CRITICAL_RATE_LIMIT_BACKOFF=0.0,
        INITIAL_POLL_DELAY=0.0,
        INTER_DEVICE_DELAY=0.0,
    )


@pytest.fixture
def heating_payload():
    """Status payload of a heating device."""
    return {
        "about": {"firmware_version": "5.39.2134", "ip_address": "10.0.0.12"},
        "control": {
            "brightness_level": 100,
            "display_temperature_unit": "c",
            "set_temperature_c": 30.0,
            "set_temperature_f": 86,
            "thermal_control_status": "heating",
        },
        "status": {
            "is_connected": True,
            "is_water_low": False,
            "water_level": 80,
            "water_temperature_c": 24.5,
            "water_temperature_f": 76,
        },
    }


@pytest.fixture
def standby_payload():
    """Status payload of a device in standby."""
    return {
        "control": {
            "set_temperature_c": 21.0,
            "thermal_control_status": "standby",
        },
        "status": {
            "is_connected": True,
            "water_temperature_c": 22.0,
        },
    }


@pytest.fixture
def devices_payload():
    """Response of GET /devices."""
    return [
        {"id": "zx-1", "name": "Bedroom", "attachments": ["CHILIPAD_PRO_QUEEN"]},
        {"id": "zx-2", "name": "Guest room"},
    ]


@pytest.fixture
def mock_api():
    """Create a mock SleepMeAPI instance."""
    api = MagicMock()
    api.sustainable_request_rate = 1 / 15
    api.add_status_listener = MagicMock(return_value=MagicMock())
    api.get_device_status = AsyncMock(return_value=None)
    return api
