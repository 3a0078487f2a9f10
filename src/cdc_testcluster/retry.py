"""Retry and readiness polling helpers.

Two ways of tolerating a flaky dependency live here:

* ``RetryContext`` / ``RetryingProxy`` re-run a *command* that failed
  (``docker compose port`` racing a container that is still being
  created, ``docker inspect`` hitting a daemon hiccup).
* ``poll_until`` waits for a *condition* to become true (a port accepting
  connections, a container reporting ``Running``). Probe exceptions count
  as "not ready yet" unless ``tolerate_errors=False``; only running out of
  attempts is fatal.

Example:
    >>> from cdc_testcluster.retry import poll_until
    >>> poll_until(lambda: 42, service="answer", max_tries=1, sleep=lambda _: None)
    42
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, TextIO, TypeVar

from cdc_testcluster.errors import CommandError, ReadinessTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Calculate delay before next retry attempt.

        Args:
            attempt: Zero-based attempt number (0 = first retry)

        Returns:
            Delay in seconds before next attempt
        """
        ...

    @abstractmethod
    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        """Determine if another attempt should be made.

        Args:
            attempt: Number of attempts made so far
            error: The exception that caused the failure

        Returns:
            True if should retry, False otherwise
        """
        ...


@dataclass
class ConstantBackoff(RetryStrategy):
    """Constant delay between attempts.

    Attributes:
        max_retries: Total attempts ``RetryContext.run`` makes before giving up
        delay: Seconds to wait between attempts
        retryable_errors: Exception types worth retrying (None = all)
    """

    max_retries: int = 3
    delay: float = 1.0
    retryable_errors: tuple[type[BaseException], ...] | None = None

    def next_delay(self, attempt: int) -> float:
        return self.delay

    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        if attempt >= self.max_retries:
            return False
        if error is not None and self.retryable_errors is not None:
            return isinstance(error, self.retryable_errors)
        return True


@dataclass
class RetryContext:
    """Context tracking retry state.

    Example:
        >>> ctx = RetryContext(ConstantBackoff(max_retries=3))
        >>> result = ctx.run(lambda: call_api())
    """

    strategy: RetryStrategy
    on_retry: Callable[[int, Exception, float], None] | None = None
    sleep: Callable[[float], None] = time.sleep
    attempt: int = field(default=0, init=False)

    def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute function with retry logic.

        Raises:
            Last exception if all retries exhausted
        """
        while True:
            self.attempt += 1
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if not self.strategy.should_retry(self.attempt, e):
                    raise

                delay = self.strategy.next_delay(self.attempt - 1)

                if self.on_retry:
                    self.on_retry(self.attempt, e, delay)

                self.sleep(delay)


class RetryingProxy:
    """Forward method calls to ``target``, retrying failed commands.

    Only ``retry_on`` exceptions are retried; anything else propagates on
    the first failure. Non-callable attributes are passed through as-is.

    Example::

        compose = RetryingProxy(ComposeRunner(...), retries=4)
        compose.port("kafka", 9092)   # retried up to 4 times on CommandError
    """

    def __init__(
        self,
        target: Any,
        retries: int = 4,
        delay: float = 1.0,
        retry_on: tuple[type[BaseException], ...] = (CommandError,),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._target = target
        self._strategy = ConstantBackoff(max_retries=retries, delay=delay, retryable_errors=retry_on)
        self._sleep = sleep

    @property
    def target(self) -> Any:
        return self._target

    def __getattr__(self, name: str) -> Any:
        attr = getattr(self._target, name)
        if not callable(attr):
            return attr

        def _on_retry(attempt: int, error: Exception, delay: float) -> None:
            logger.warning(
                "command.retry",
                extra={"call": name, "attempt": attempt, "error": str(error), "delay": delay},
            )

        def wrapper(*args: Any, **kwargs: Any) -> Any:
            ctx = RetryContext(strategy=self._strategy, on_retry=_on_retry, sleep=self._sleep)
            return ctx.run(attr, *args, **kwargs)

        wrapper.__name__ = name
        return wrapper


def poll_until(
    probe: Callable[[], T | None],
    *,
    service: str,
    max_tries: int,
    message: str | None = None,
    delay: float = 1.0,
    tolerate_errors: bool = True,
    sleep: Callable[[float], None] = time.sleep,
    progress: TextIO | None = None,
) -> T:
    """Poll ``probe`` until it returns something truthy.

    Each attempt sleeps ``delay`` first, then calls the probe. A falsy
    result means "not yet". An exception means "not yet" too when
    ``tolerate_errors`` is set, and is re-raised otherwise.

    Returns:
        The first truthy probe result.

    Raises:
        ReadinessTimeoutError: after ``max_tries`` attempts without success.
    """
    label = message or service
    if progress is not None:
        progress.write(f"Waiting for {label}...")
        progress.flush()

    last_error: BaseException | None = None
    for attempt in range(1, max_tries + 1):
        sleep(delay)
        try:
            result = probe()
        except Exception as exc:
            if not tolerate_errors:
                raise
            last_error = exc
            logger.debug(
                "readiness.not_ready",
                extra={"service": service, "attempt": attempt, "error": f"{type(exc).__name__}: {exc}"},
            )
            if progress is not None:
                progress.write(f"not ready: {exc} ")
                progress.flush()
            continue

        if result:
            if progress is not None:
                progress.write(" OK\n")
                progress.flush()
            logger.debug("readiness.ok", extra={"service": service, "attempts": attempt})
            return result

        if progress is not None:
            progress.write(".")
            progress.flush()

    if progress is not None:
        progress.write(" FAILED\n")
        progress.flush()
    raise ReadinessTimeoutError(service, max_tries, last_error)
