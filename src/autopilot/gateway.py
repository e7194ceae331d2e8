"""Rate-limited execution gateway.

Every outbound brokerage call (quotes, historicals, account reads, order
submits) goes through one FIFO queue drained by a single consumer thread, so
calls reach the provider strictly in submission order and never two at a
time.  The consumer respects a sliding request budget
(``max_requests`` per ``window_seconds``), an administrative throttle, and
retries provider rate-limit errors with exponential backoff before failing
the caller with ``GatewayRateLimitError``.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable

from loguru import logger


class GatewayError(RuntimeError):
    pass


class GatewayRateLimitError(GatewayError):
    """Provider kept rate-limiting a request after every retry."""


class GatewayQueueCleared(GatewayError):
    """The request was dropped by ``clear_queue`` before it was issued."""


class GatewayClosed(GatewayError):
    pass


def is_rate_limit_error(exc: BaseException) -> bool:
    for attr in ("status", "status_code"):
        if getattr(exc, attr, None) == 429:
            return True
    response = getattr(exc, "response", None)
    if response is not None and getattr(response, "status_code", None) == 429:
        return True
    text = str(exc).lower()
    return "429" in text or "rate limit" in text or "too many requests" in text or "throttled" in text


@dataclass
class _Request:
    func: Callable[..., Any]
    args: tuple[Any, ...]
    kwargs: dict[str, Any]
    endpoint: str
    future: Future = field(default_factory=Future)
    attempts: int = 0
    not_before: float = 0.0
    enqueued_at: float = field(default_factory=time.monotonic)


class RateLimitedGateway:
    def __init__(
        self,
        max_requests: int = 200,
        window_seconds: float = 60.0,
        max_retries: int = 3,
        backoff_base_seconds: float = 1.0,
        name: str = "brokerage-gateway",
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.max_retries = max_retries
        self.backoff_base_seconds = backoff_base_seconds
        self.name = name

        self._cond = threading.Condition()
        self._queue: deque[_Request] = deque()
        self._issued: deque[float] = deque()
        self._throttled_until = 0.0
        self._processing = False
        self._closed = False
        self._thread: threading.Thread | None = None
        self._retry_count = 0
        self._total_processed = 0

    # ── Submission ────────────────────────────────────────────────

    def submit(self, func: Callable[..., Any], /, *args: Any, endpoint: str | None = None, **kwargs: Any) -> Any:
        """Queue ``func(*args, **kwargs)`` and block until it has run."""
        return self.submit_async(func, *args, endpoint=endpoint, **kwargs).result()

    def submit_async(
        self, func: Callable[..., Any], /, *args: Any, endpoint: str | None = None, **kwargs: Any
    ) -> Future:
        request = _Request(
            func=func,
            args=args,
            kwargs=kwargs,
            endpoint=endpoint or getattr(func, "__name__", "request"),
        )
        with self._cond:
            if self._closed:
                raise GatewayClosed(f"{self.name} is closed")
            self._queue.append(request)
            self._ensure_consumer()
            self._cond.notify_all()
        return request.future

    # ── Administration ────────────────────────────────────────────

    def throttle(self, duration_ms: int) -> None:
        """Pause the consumer for ``duration_ms`` milliseconds."""
        with self._cond:
            until = time.monotonic() + max(0, duration_ms) / 1000
            self._throttled_until = max(self._throttled_until, until)
            self._cond.notify_all()
        logger.warning("{} throttled for {} ms", self.name, duration_ms)

    def resume(self) -> None:
        with self._cond:
            self._throttled_until = 0.0
            self._cond.notify_all()
        logger.info("{} throttle lifted", self.name)

    def clear_queue(self) -> int:
        """Drop every pending request; returns how many were dropped."""
        with self._cond:
            dropped = list(self._queue)
            self._queue.clear()
            self._cond.notify_all()
        for request in dropped:
            if not request.future.done():
                request.future.set_exception(GatewayQueueCleared(f"{request.endpoint} dropped by queue clear"))
        logger.warning("{} queue cleared, {} pending request(s) dropped", self.name, len(dropped))
        return len(dropped)

    def get_stats(self) -> dict[str, Any]:
        with self._cond:
            now = time.monotonic()
            self._prune_window(now)
            remaining = max(0.0, self._throttled_until - now)
            return {
                "queueLength": len(self._queue),
                "isThrottled": remaining > 0,
                "throttleTimeRemaining": int(round(remaining * 1000)),
                "processing": self._processing,
                "requestsInWindow": len(self._issued),
                "maxRequests": self.max_requests,
                "windowMs": int(self.window_seconds * 1000),
                "retryCount": self._retry_count,
                "totalProcessed": self._total_processed,
            }

    def close(self, timeout: float = 5.0) -> None:
        with self._cond:
            if self._closed:
                return
            self._closed = True
            pending = list(self._queue)
            self._queue.clear()
            self._cond.notify_all()
            thread = self._thread
        for request in pending:
            if not request.future.done():
                request.future.set_exception(GatewayClosed(f"{self.name} closed before {request.endpoint} ran"))
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        logger.info("{} closed", self.name)

    # ── Consumer ──────────────────────────────────────────────────

    def _ensure_consumer(self) -> None:
        if self._thread is None or not self._thread.is_alive():
            self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
            self._thread.start()

    def _prune_window(self, now: float) -> None:
        while self._issued and now - self._issued[0] >= self.window_seconds:
            self._issued.popleft()

    def _next_slot(self, now: float) -> float:
        self._prune_window(now)
        if len(self._issued) < self.max_requests:
            return now
        return self._issued[0] + self.window_seconds

    def _take_next(self) -> _Request | None:
        with self._cond:
            while True:
                if self._closed:
                    return None
                if not self._queue:
                    self._cond.wait()
                    continue
                now = time.monotonic()
                head = self._queue[0]
                ready_at = max(self._throttled_until, head.not_before, self._next_slot(now))
                if ready_at > now:
                    self._cond.wait(timeout=ready_at - now)
                    continue
                request = self._queue.popleft()
                if request.attempts == 0 and not request.future.set_running_or_notify_cancel():
                    continue
                self._issued.append(now)
                self._processing = True
                return request

    def _run(self) -> None:
        while True:
            request = self._take_next()
            if request is None:
                return
            error: Exception | None = None
            result: Any = None
            try:
                result = request.func(*request.args, **request.kwargs)
            except Exception as exc:
                error = exc
            # Stats settle before the caller is released
            with self._cond:
                self._processing = False
                self._total_processed += 1
                self._cond.notify_all()
            if error is None:
                request.future.set_result(result)
            else:
                self._on_failure(request, error)

    def _on_failure(self, request: _Request, exc: Exception) -> None:
        if not is_rate_limit_error(exc):
            request.future.set_exception(exc)
            return

        if request.attempts >= self.max_retries:
            logger.error(
                "{} gave up on {} after {} rate-limit retries: {}",
                self.name, request.endpoint, request.attempts, exc,
            )
            error = GatewayRateLimitError(
                f"{request.endpoint} still rate limited after {request.attempts} retries: {exc}"
            )
            error.__cause__ = exc
            request.future.set_exception(error)
            return

        request.attempts += 1
        delay = self.backoff_base_seconds * (2 ** (request.attempts - 1))
        logger.warning(
            "{} rate limited on {}; retry {}/{} in {:.1f}s",
            self.name, request.endpoint, request.attempts, self.max_retries, delay,
        )
        with self._cond:
            if self._closed:
                request.future.set_exception(GatewayClosed(f"{self.name} closed before {request.endpoint} retried"))
                return
            request.not_before = time.monotonic() + delay
            self._retry_count += 1
            # Head of the queue keeps the original submission order
            self._queue.appendleft(request)
            self._cond.notify_all()
