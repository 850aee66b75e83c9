from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional, TypeVar

import psycopg2
import psycopg2.errors
from psycopg2 import errorcodes

from pg_transfer.errors import TransferCancelled

LOG = logging.getLogger(__name__)

T = TypeVar("T")

# Connection drops, throttling and timeout-class SQLSTATEs.
TRANSIENT_PGCODES = frozenset({
    errorcodes.CONNECTION_EXCEPTION,
    errorcodes.SQLCLIENT_UNABLE_TO_ESTABLISH_SQLCONNECTION,
    errorcodes.CONNECTION_DOES_NOT_EXIST,
    errorcodes.SQLSERVER_REJECTED_ESTABLISHMENT_OF_SQLCONNECTION,
    errorcodes.CONNECTION_FAILURE,
    errorcodes.SERIALIZATION_FAILURE,
    errorcodes.DEADLOCK_DETECTED,
    errorcodes.TOO_MANY_CONNECTIONS,
    errorcodes.LOCK_NOT_AVAILABLE,
    errorcodes.QUERY_CANCELED,
    errorcodes.ADMIN_SHUTDOWN,
    errorcodes.CRASH_SHUTDOWN,
    errorcodes.CANNOT_CONNECT_NOW,
})

# pgcode is only filled in for errors decoded from a server response
_TRANSIENT_CLASSES = tuple(psycopg2.errors.lookup(code) for code in sorted(TRANSIENT_PGCODES))


def is_transient(exc: BaseException) -> bool:
    if not isinstance(exc, psycopg2.Error):
        return False
    if exc.pgcode in TRANSIENT_PGCODES:
        return True
    return isinstance(exc, _TRANSIENT_CLASSES)


class RetryPolicy:
    """
    Run one discrete command, retrying transient database errors.
    - attempts: total tries, including the first one
    - backoff: sleeps backoff_base ** attempt seconds after a failed attempt
    - anything is_retryable rejects propagates on first failure
    """

    def __init__(
        self,
        attempts: int = 3,
        backoff_base: float = 2.0,
        is_retryable: Callable[[BaseException], bool] = is_transient,
        sleep: Callable[[float], None] = time.sleep,
        cancel_event: Optional[threading.Event] = None,
        logger: logging.Logger | None = None,
    ):
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self.attempts = attempts
        self.backoff_base = backoff_base
        self.is_retryable = is_retryable
        self.sleep = sleep
        self.cancel_event = cancel_event
        self.log = logger or LOG

    def delay_for(self, attempt: int) -> float:
        return self.backoff_base ** attempt

    def bind(self, cancel_event: Optional[threading.Event]) -> "RetryPolicy":
        return RetryPolicy(
            attempts=self.attempts,
            backoff_base=self.backoff_base,
            is_retryable=self.is_retryable,
            sleep=self.sleep,
            cancel_event=cancel_event,
            logger=self.log,
        )

    def _wait(self, seconds: float) -> None:
        if self.cancel_event is None:
            self.sleep(seconds)
            return
        if self.cancel_event.wait(seconds):
            raise TransferCancelled("Cancelled while waiting to retry")

    def run(self, fn: Callable[..., T], *args, description: str = "command", **kwargs) -> T:
        for attempt in range(1, self.attempts + 1):
            try:
                return fn(*args, **kwargs)
            except Exception as e:
                if not self.is_retryable(e):
                    raise
                if attempt >= self.attempts:
                    self.log.error("Giving up on %s after %d attempts: %s", description, attempt, e)
                    raise
                delay = self.delay_for(attempt)
                self.log.warning(
                    "Retry %d/%d for %s after %.0fs due to transient database error (pgcode=%s): %s",
                    attempt, self.attempts - 1, description, delay, getattr(e, "pgcode", None), e,
                )
                self._wait(delay)
        raise AssertionError("unreachable")
