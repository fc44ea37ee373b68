"""Priority request scheduler for the SleepMe API.

Requests wait in four priority tiers and are drained by a single dispatch
task that asks the rate limiter before every call. Reads for the same
device and operation are merged, a newer write for a device cancels its
pending requests, and pending power-off commands jump ahead within their
tier.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import itertools
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from ..constants import (
    API_DEFAULTS,
    PAYLOAD_THERMAL_STATUS,
    APIDefaults,
    CompletionStatus,
    OperationType,
    RequestPriority,
)
from ..models import RequestResult
from .errors import SleepMeError, SleepMeRateLimitError, is_transient_error
from .rate_limiter import TokenBucketRateLimiter

_LOGGER = logging.getLogger(__name__)

# Shortest sleep of the dispatch loop, avoids spinning on zero waits
MIN_WAIT = 0.05

RequestExecutor = Callable[[float], Awaitable[Any]]


@dataclass(eq=False)
class QueuedRequest:
    """A request waiting in, or dispatched from, a priority tier.

    The executor is called with the I/O timeout for the request priority
    and returns the decoded response body.
    """

    id: int
    operation: OperationType
    priority: RequestPriority
    executor: RequestExecutor
    future: asyncio.Future
    device_id: str | None = None
    payload: dict[str, Any] | None = None
    created_at: float = 0.0
    attempt_count: int = 0
    executing: bool = False
    executing_since: float | None = None
    not_before: float = 0.0
    epoch: int = 0
    waiters: int = 1

    @property
    def is_write(self) -> bool:
        return self.operation is OperationType.WRITE_SETTINGS

    @property
    def is_power_off(self) -> bool:
        return (
            self.is_write
            and self.payload is not None
            and self.payload.get(PAYLOAD_THERMAL_STATUS) == "standby"
        )

    def describe(self) -> str:
        target = f" for {self.device_id}" if self.device_id else ""
        return f"{self.priority.label} {self.operation.value} #{self.id}{target}"


def _chain_future(source: asyncio.Future, target: asyncio.Future) -> None:
    if target.done():
        return
    if source.cancelled():
        target.cancel()
    elif source.exception() is not None:
        target.set_exception(source.exception())
    else:
        target.set_result(source.result())


class RequestScheduler:
    """Drains prioritized requests against a token bucket.

    Only the dispatch task touches the rate limiter and performs I/O.
    ``submit`` never blocks. The loop starts on the first submission and
    ends when the queue is empty.

    Attributes:
        rate_limiter: The limiter consulted before every dispatch.
    """

    def __init__(
        self,
        rate_limiter: TokenBucketRateLimiter | None = None,
        *,
        defaults: APIDefaults = API_DEFAULTS,
        clock: Callable[[], float] | None = None,
    ):
        """Initialize the scheduler.

        Args:
            rate_limiter: Limiter to consult (default: a fresh token bucket).
            defaults: Timeouts, retry budgets and backoff values.
            clock: Monotonic time source, replaceable in tests.
        """
        self.rate_limiter = rate_limiter or TokenBucketRateLimiter()
        self._defaults = defaults
        self._clock = clock or time.monotonic
        self._tiers: dict[RequestPriority, deque[QueuedRequest]] = {
            priority: deque() for priority in RequestPriority
        }
        self._request_ids = itertools.count(1)
        self._device_epochs: dict[str, int] = {}
        self._wakeup = asyncio.Event()
        self._dispatch_task: asyncio.Task | None = None
        self._closed = False

        # Scheduler level hold after a 429, shorter for CRITICAL
        self._backoff_until = 0.0
        self._critical_backoff_until = 0.0

        self._stats = {
            "submitted": 0,
            "dispatched": 0,
            "deduplicated": 0,
            "cancelled": 0,
            "skipped": 0,
            "retried": 0,
            "rate_limited": 0,
            "failed": 0,
            "forced": 0,
        }

    def _get_current_time(self) -> float:
        """Get current monotonic time."""
        return self._clock()

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def submit(
        self,
        operation: OperationType,
        executor: RequestExecutor,
        *,
        priority: RequestPriority = RequestPriority.NORMAL,
        device_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> asyncio.Future:
        """Queue a request and return a future for its RequestResult.

        A read matching a pending read for the same device returns the
        pending request's future, so callers should await it through
        ``asyncio.shield``. A write cancels every pending request for its
        device.

        Args:
            operation: Kind of request.
            executor: Coroutine function performing the call.
            priority: Scheduling priority.
            device_id: Target device, if any.
            payload: Write body, used to detect power-off commands.

        Returns:
            Future resolving to a RequestResult, or raising the terminal error.

        Raises:
            SleepMeError: If the scheduler was stopped.
        """
        if self._closed:
            raise SleepMeError("Request scheduler is stopped")
        loop = asyncio.get_running_loop()
        self._stats["submitted"] += 1

        if operation is OperationType.WRITE_SETTINGS:
            if device_id is not None:
                self._device_epochs[device_id] = self._device_epochs.get(device_id, 0) + 1
                self.cancel_device_requests(device_id)
        else:
            existing = self._find_pending(device_id, operation)
            if existing is not None:
                existing.waiters += 1
                self._stats["deduplicated"] += 1
                if priority < existing.priority:
                    self._move(existing, priority)
                _LOGGER.debug(
                    "Joined pending %s (%d waiters)", existing.describe(), existing.waiters
                )
                return existing.future

            skip_reason = self._shed_reason(operation, priority)
            if skip_reason is not None:
                self._stats["skipped"] += 1
                _LOGGER.debug(
                    "Skipping %s status read for %s: %s", priority.label, device_id, skip_reason
                )
                future = loop.create_future()
                future.set_result(RequestResult(status=CompletionStatus.SKIPPED))
                return future

        request = QueuedRequest(
            id=next(self._request_ids),
            operation=operation,
            priority=priority,
            executor=executor,
            future=loop.create_future(),
            device_id=device_id,
            payload=payload,
            created_at=self._get_current_time(),
            epoch=self._device_epochs.get(device_id, 0) if device_id is not None else 0,
        )
        self._tiers[priority].append(request)
        _LOGGER.debug("Queued %s (%d pending)", request.describe(), self.pending_count)
        self._ensure_dispatcher()
        self._wakeup.set()
        return request.future

    def cancel_device_requests(self, device_id: str) -> int:
        """Resolve all pending, non-executing requests of a device as cancelled.

        Returns:
            Number of cancelled requests.
        """
        cancelled = 0
        for tier in self._tiers.values():
            for request in [r for r in tier if r.device_id == device_id and not r.executing]:
                tier.remove(request)
                self._resolve(request, RequestResult(status=CompletionStatus.CANCELLED))
                cancelled += 1
        if cancelled:
            self._stats["cancelled"] += cancelled
            _LOGGER.debug("Cancelled %d pending requests for %s", cancelled, device_id)
        return cancelled

    def _find_pending(self, device_id: str | None, operation: OperationType) -> QueuedRequest | None:
        for tier in self._tiers.values():
            for request in tier:
                if (
                    not request.executing
                    and request.device_id == device_id
                    and request.operation is operation
                ):
                    return request
        return None

    def _move(self, request: QueuedRequest, priority: RequestPriority) -> None:
        self._tiers[request.priority].remove(request)
        request.priority = priority
        tier = self._tiers[priority]
        # Keep the tier ordered by age
        index = next(
            (i for i, other in enumerate(tier) if other.created_at > request.created_at),
            len(tier),
        )
        tier.insert(index, request)
        _LOGGER.debug("Promoted %s", request.describe())

    def _shed_reason(self, operation: OperationType, priority: RequestPriority) -> str | None:
        if operation is not OperationType.READ_STATUS or priority < RequestPriority.NORMAL:
            return None
        if priority is RequestPriority.LOW and self.rate_limiter.backoff_active:
            return "rate limiter is backing off"
        pending = self.pending_count
        if pending >= self._defaults.BACKLOG_SHED_THRESHOLD:
            return f"{pending} requests already pending"
        return None

    # -------------------------------------------------------------------------
    # Dispatch loop
    # -------------------------------------------------------------------------

    def _ensure_dispatcher(self) -> None:
        if self._dispatch_task is None or self._dispatch_task.done():
            self._dispatch_task = asyncio.create_task(self._dispatch_loop())
            self._dispatch_task.add_done_callback(self._on_dispatcher_done)

    def _on_dispatcher_done(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            _LOGGER.error("Request dispatcher crashed", exc_info=task.exception())

    async def _dispatch_loop(self) -> None:
        while True:
            self._wakeup.clear()
            now = self._get_current_time()
            self._expire_pending_reads(now)

            request = self._next_request(now)
            if request is None:
                if not self.pending_count:
                    return
                await self._wait(self._next_eligible_delay(now))
                continue

            if request.priority is RequestPriority.CRITICAL:
                hold_until = self._critical_backoff_until
            else:
                hold_until = self._backoff_until
            if hold_until > now:
                _LOGGER.debug("Holding %s for %.1fs after rate limit", request.describe(), hold_until - now)
                await self._wait(hold_until - now)
                continue

            decision = self.rate_limiter.decide(request.priority)
            if not decision.allowed:
                _LOGGER.debug(
                    "%s waiting %.1fs: %s", request.describe(), decision.wait_seconds, decision.reason
                )
                await self._wait(max(decision.wait_seconds, MIN_WAIT))
                continue

            await self._dispatch(request)

    async def _wait(self, timeout: float | None) -> None:
        # Woken early by new submissions
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)

    def _next_request(self, now: float) -> QueuedRequest | None:
        for priority in RequestPriority:
            eligible = [
                r for r in self._tiers[priority] if not r.executing and r.not_before <= now
            ]
            if not eligible:
                continue
            for request in eligible:
                if request.is_power_off:
                    return request
            return eligible[0]
        return None

    def _next_eligible_delay(self, now: float) -> float | None:
        delays = [
            r.not_before - now
            for tier in self._tiers.values()
            for r in tier
            if not r.executing
        ]
        if not delays:
            return None
        return max(min(delays), MIN_WAIT)

    def _expire_pending_reads(self, now: float) -> None:
        for tier in self._tiers.values():
            expired = [
                r
                for r in tier
                if not r.executing
                and not r.is_write
                and now - r.created_at > self._defaults.MAX_QUEUE_AGE
            ]
            for request in expired:
                tier.remove(request)
                _LOGGER.info("Dropping stale %s after %.0fs in queue", request.describe(), now - request.created_at)
                self._resolve(request, RequestResult(status=CompletionStatus.EXPIRED))

    async def _dispatch(self, request: QueuedRequest) -> None:
        request.executing = True
        request.executing_since = self._get_current_time()
        self._stats["dispatched"] += 1
        timeout = self._defaults.timeout_for(request.priority)
        _LOGGER.debug("Dispatching %s (attempt %d)", request.describe(), request.attempt_count + 1)

        task = asyncio.create_task(request.executor(timeout))
        try:
            done, _ = await asyncio.wait({task}, timeout=self._defaults.MAX_EXECUTING_TIME)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if not done:
            task.cancel()
            self._force_complete(request)
            return

        try:
            data = task.result()
        except SleepMeRateLimitError as err:
            self._handle_rate_limited(request, err)
        except Exception as err:
            self._handle_failure(request, err)
        else:
            self._handle_success(request, data)

    # -------------------------------------------------------------------------
    # Outcomes
    # -------------------------------------------------------------------------

    def _handle_success(self, request: QueuedRequest, data: Any) -> None:
        self.rate_limiter.record_outcome(request.priority, succeeded=True, was_rate_limited=False)
        self._remove(request)
        if self._is_superseded(request):
            _LOGGER.debug("Discarding result of superseded %s", request.describe())
            self._resolve(request, RequestResult(status=CompletionStatus.SUPERSEDED))
            return
        self._resolve(request, RequestResult(status=CompletionStatus.COMPLETED, data=data))

    def _handle_rate_limited(self, request: QueuedRequest, err: SleepMeRateLimitError) -> None:
        self.rate_limiter.record_outcome(request.priority, succeeded=False, was_rate_limited=True)
        self._stats["rate_limited"] += 1
        now = self._get_current_time()
        backoff = max(self._defaults.RATE_LIMIT_BACKOFF, err.retry_after or 0.0)
        self._backoff_until = max(self._backoff_until, now + backoff)
        self._critical_backoff_until = max(
            self._critical_backoff_until, now + self._defaults.CRITICAL_RATE_LIMIT_BACKOFF
        )
        self._remove(request)

        if self._is_superseded(request):
            self._resolve(request, RequestResult(status=CompletionStatus.SUPERSEDED))
            return
        budget = self._defaults.retry_budget_for(request.priority)
        if request.attempt_count >= budget:
            _LOGGER.warning("Giving up on %s after %d rate-limited attempts", request.describe(), request.attempt_count + 1)
            self._fail(request, err)
            return
        _LOGGER.info("%s rate limited, requeued (%d/%d)", request.describe(), request.attempt_count + 1, budget)
        self._requeue(request, now, front=True)

    def _handle_failure(self, request: QueuedRequest, err: Exception) -> None:
        self.rate_limiter.record_outcome(request.priority, succeeded=False, was_rate_limited=False)
        now = self._get_current_time()
        self._remove(request)

        if self._is_superseded(request):
            self._resolve(request, RequestResult(status=CompletionStatus.SUPERSEDED))
            return
        budget = self._defaults.retry_budget_for(request.priority)
        if is_transient_error(err) and request.attempt_count < budget:
            delay = self._defaults.retry_delay_for(request.attempt_count + 1)
            _LOGGER.warning(
                "%s failed (%s), retry %d/%d in %.0fs",
                request.describe(),
                err,
                request.attempt_count + 1,
                budget,
                delay,
            )
            self._requeue(request, now, front=False, not_before=now + delay)
            return
        self._fail(request, err)

    def _force_complete(self, request: QueuedRequest) -> None:
        self.rate_limiter.record_outcome(request.priority, succeeded=False, was_rate_limited=False)
        self._stats["forced"] += 1
        self._remove(request)
        if request.is_write:
            _LOGGER.warning(
                "%s stuck for %.0fs, assuming the server applied it",
                request.describe(),
                self._defaults.MAX_EXECUTING_TIME,
            )
            self._resolve(request, RequestResult(status=CompletionStatus.ASSUMED))
        else:
            _LOGGER.warning("%s stuck, resolving without data", request.describe())
            self._resolve(request, RequestResult(status=CompletionStatus.TIMED_OUT))

    def _requeue(
        self, request: QueuedRequest, now: float, *, front: bool, not_before: float = 0.0
    ) -> None:
        self._stats["retried"] += 1
        request.executing = False
        request.executing_since = None
        request.attempt_count += 1
        request.created_at = now
        request.not_before = not_before

        if not request.is_write:
            duplicate = self._find_pending(request.device_id, request.operation)
            if duplicate is not None:
                # A new read arrived while this one was executing
                duplicate.waiters += request.waiters
                if request.priority < duplicate.priority:
                    self._move(duplicate, request.priority)
                duplicate.future.add_done_callback(
                    functools.partial(_chain_future, target=request.future)
                )
                return

        tier = self._tiers[request.priority]
        if front:
            tier.appendleft(request)
        else:
            tier.append(request)
        self._wakeup.set()

    def _is_superseded(self, request: QueuedRequest) -> bool:
        if request.device_id is None:
            return False
        return self._device_epochs.get(request.device_id, 0) > request.epoch

    def _remove(self, request: QueuedRequest) -> None:
        with contextlib.suppress(ValueError):
            self._tiers[request.priority].remove(request)

    def _resolve(self, request: QueuedRequest, result: RequestResult) -> None:
        if not request.future.done():
            request.future.set_result(result)

    def _fail(self, request: QueuedRequest, err: Exception) -> None:
        self._stats["failed"] += 1
        if not request.future.done():
            request.future.set_exception(err)

    # -------------------------------------------------------------------------
    # Lifecycle and introspection
    # -------------------------------------------------------------------------

    async def stop(self) -> None:
        """Stop dispatching and cancel everything still queued."""
        self._closed = True
        task, self._dispatch_task = self._dispatch_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for tier in self._tiers.values():
            for request in tier:
                self._resolve(request, RequestResult(status=CompletionStatus.CANCELLED))
            tier.clear()
        _LOGGER.debug("Request scheduler stopped")

    @property
    def is_running(self) -> bool:
        """Whether the dispatch task is alive."""
        return self._dispatch_task is not None and not self._dispatch_task.done()

    @property
    def pending_count(self) -> int:
        """Number of queued requests that are not executing."""
        return sum(1 for tier in self._tiers.values() for r in tier if not r.executing)

    def pending_requests(self) -> list[QueuedRequest]:
        """Get queued, non-executing requests in dispatch order of tiers."""
        return [r for priority in RequestPriority for r in self._tiers[priority] if not r.executing]

    def get_queue_status(self) -> dict:
        """Get queue sizes, backoff state and counters."""
        now = self._get_current_time()
        return {
            "pending": {priority.label: len(self._tiers[priority]) for priority in RequestPriority},
            "executing": sum(1 for tier in self._tiers.values() for r in tier if r.executing),
            "backoff_remaining": round(max(0.0, self._backoff_until - now), 3),
            "critical_backoff_remaining": round(max(0.0, self._critical_backoff_until - now), 3),
            **self._stats,
        }
