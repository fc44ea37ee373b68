"""Input validation functions for the SleepMe client.

This module provides validation functions used before anything reaches
the request scheduler. It includes validation for:
- API tokens (presence and header safety)
- Device identifiers (URL path safety)
- Target temperatures (supported device range)

Validators return a tuple of (is_valid, error_message) and never raise.
"""

from __future__ import annotations

import math
import re

from .constants import MAX_TEMPERATURE_C, MIN_TEMPERATURE_C


def validate_api_token(token: str | None) -> tuple[bool, str | None]:
    """Validate a bearer token.

    Args:
        token: API token from the SleepMe developer portal.

    Returns:
        Tuple of (is_valid, error_message).
        error_message is None if valid, otherwise contains description of the error.

    Example:
        >>> validate_api_token("abc123")
        (True, None)
        >>> validate_api_token("   ")
        (False, "API token cannot be empty")
    """
    if token is None or not str(token).strip():
        return False, "API token cannot be empty"

    # Header injection prevention
    if re.search(r"[\r\n]", token):
        return False, "API token contains invalid characters"

    return True, None


def validate_device_id(device_id: str | None) -> tuple[bool, str | None]:
    """Validate a device identifier before it is put into a URL path.

    Example:
        >>> validate_device_id("zx-abc123")
        (True, None)
        >>> validate_device_id("../devices")
        (False, "Device id contains invalid characters")
    """
    if not device_id or not device_id.strip():
        return False, "Device id cannot be empty"

    if not re.fullmatch(r"[A-Za-z0-9_-]+", device_id):
        return False, "Device id contains invalid characters"

    return True, None


def validate_temperature(temperature: float) -> tuple[bool, str | None]:
    """Validate a target temperature in Celsius.

    Example:
        >>> validate_temperature(21)
        (True, None)
        >>> validate_temperature(60)
        (False, "Temperature must be between 13.0 and 46.0 °C")
    """
    if isinstance(temperature, bool) or not isinstance(temperature, (int, float)):
        return False, "Temperature must be a number"

    if not math.isfinite(temperature):
        return False, "Temperature must be finite"

    if not MIN_TEMPERATURE_C <= temperature <= MAX_TEMPERATURE_C:
        return False, f"Temperature must be between {MIN_TEMPERATURE_C} and {MAX_TEMPERATURE_C} °C"

    return True, None
