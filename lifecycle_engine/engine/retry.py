"""Backoff and timeout helpers for directory calls."""

import logging
import threading
from typing import Callable, Optional

from ..connectors.base_adapter import AdapterResult
from ..exceptions import FatalError, RetryableError
from ..models import RetryPolicy

logger = logging.getLogger(__name__)


def compute_backoff(attempt: int, policy: RetryPolicy) -> float:
    """Exponential backoff: base * 2^(attempt - 1), capped at max_delay."""
    delay = policy.base_delay_seconds * (2 ** max(attempt - 1, 0))
    return min(delay, policy.max_delay_seconds)


class DirectoryCall:
    """
    One blocking adapter call on its own daemon thread.

    Every call gets a dedicated thread, so a call that hangs past its
    timeout never holds capacity that calls for other instances need.
    """

    def __init__(self, call: Callable[[], AdapterResult], description: str):
        self.description = description
        self._call = call
        self._done = threading.Event()
        self._result: Optional[AdapterResult] = None
        self._error: Optional[Exception] = None
        self._thread = threading.Thread(target=self._run, name="directory-call", daemon=True)

    def start(self) -> "DirectoryCall":
        self._thread.start()
        return self

    def _run(self):
        try:
            self._result = self._call()
        except Exception as e:
            self._error = e
        finally:
            self._done.set()

    @property
    def running(self) -> bool:
        return self._thread.is_alive() and not self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for the call to finish; True if it did."""
        return self._done.wait(timeout)

    def outcome(self) -> AdapterResult:
        """
        Classify a finished call.

        RetryableError stays retryable; any other exception escaping the
        adapter is fatal.
        """
        if isinstance(self._error, RetryableError):
            return AdapterResult.retryable(str(self._error))
        if isinstance(self._error, FatalError):
            return AdapterResult.fatal(str(self._error))
        if self._error is not None:
            logger.error(f"Unexpected error during {self.description}", exc_info=self._error)
            return AdapterResult.fatal(f"Unexpected error during {self.description}: {self._error}")

        if not isinstance(self._result, AdapterResult):
            return AdapterResult.fatal(
                f"{self.description} returned {type(self._result).__name__}, not AdapterResult"
            )
        return self._result


def call_with_timeout(call: DirectoryCall, timeout: float) -> AdapterResult:
    """
    Start a directory call and wait at most ``timeout`` seconds for it.

    The timeout counts from the moment the call starts running. A call that
    overruns is reported as retryable and left to finish on its thread;
    callers that track it can wait for it before issuing another.
    """
    call.start()
    if not call.wait(timeout):
        logger.warning(f"{call.description} timed out after {timeout}s")
        return AdapterResult.retryable(f"{call.description} timed out after {timeout}s")
    return call.outcome()
