"""API decorators for the SleepMe client.

Decorated methods never talk to the network themselves. The decorator
builds the URL, wraps the HTTP call into an executor and submits it to
the request scheduler, which decides when the call actually happens.

The owning class must provide ``base_url``, ``_scheduler`` and an
``_async_execute_request(method, url, payload, priority, timeout)``
coroutine.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from collections.abc import Callable
from typing import Any

from ..constants import CompletionStatus, OperationType, RequestPriority
from ..models import RequestResult

_LOGGER = logging.getLogger(__name__)


def _bind_url_kwargs(func: Callable, skip: int, args: tuple, kwargs: dict) -> dict[str, Any]:
    # Bind positional arguments to their parameter names for URL formatting
    params = list(inspect.signature(func).parameters.keys())
    url_kwargs = dict(kwargs)
    for i, arg in enumerate(args):
        if i + skip < len(params):
            url_kwargs[params[i + skip]] = arg
    return url_kwargs


def api_get(
    url_template: str,
    *,
    operation: OperationType = OperationType.READ_STATUS,
    default_priority: RequestPriority = RequestPriority.NORMAL,
):
    """Decorator for GET API endpoints.

    The decorated coroutine receives the RequestResult of the scheduled
    call followed by its own arguments. Callers may pass ``priority=`` to
    override the default priority. Terminal errors of the call propagate.

    Args:
        url_template: URL template with placeholders (e.g., "/devices/{device_id}").
        operation: Operation type used for deduplication.
        default_priority: Priority used when the caller gives none.

    Example:
        @api_get("/devices/{device_id}")
        async def _async_fetch_device_status(self, result, device_id):
            return result
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(self, *args, priority: RequestPriority | None = None, **kwargs):
            # Skip 'self' and 'result' (first two params)
            url_kwargs = _bind_url_kwargs(func, 2, args, kwargs)
            url = self.base_url + url_template.format(**url_kwargs)
            request_priority = default_priority if priority is None else priority

            executor = functools.partial(
                self._async_execute_request, "GET", url, None, request_priority
            )
            future = self._scheduler.submit(
                operation,
                executor,
                priority=request_priority,
                device_id=url_kwargs.get("device_id"),
            )
            # Shared with deduplicated callers, do not let one caller cancel it
            result = await asyncio.shield(future)
            return await func(self, result, *args, **kwargs)

        return wrapper

    return decorator


def api_patch(
    url_template: str,
    *,
    default_priority: RequestPriority = RequestPriority.CRITICAL,
):
    """Decorator for PATCH API endpoints.

    The decorated coroutine builds and returns the payload. The wrapper
    schedules the write and returns its RequestResult. An empty payload is
    not sent.

    Args:
        url_template: URL template with placeholders.
        default_priority: Priority used when the caller gives none.

    Example:
        @api_patch("/devices/{device_id}")
        async def _async_patch_device(self, device_id, thermal_status=None):
            return {"thermal_control_status": thermal_status}
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(self, *args, priority: RequestPriority | None = None, **kwargs) -> RequestResult:
            payload = await func(self, *args, **kwargs)
            if not payload:
                _LOGGER.debug("No fields to update (empty payload) - skipping PATCH.")
                return RequestResult(status=CompletionStatus.SKIPPED)

            # Skip 'self' (first param)
            url_kwargs = _bind_url_kwargs(func, 1, args, kwargs)
            url = self.base_url + url_template.format(**url_kwargs)
            request_priority = default_priority if priority is None else priority

            executor = functools.partial(
                self._async_execute_request, "PATCH", url, payload, request_priority
            )
            future = self._scheduler.submit(
                OperationType.WRITE_SETTINGS,
                executor,
                priority=request_priority,
                device_id=url_kwargs.get("device_id"),
                payload=payload,
            )
            return await asyncio.shield(future)

        return wrapper

    return decorator
