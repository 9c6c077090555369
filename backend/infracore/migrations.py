"""Startup schema migration with bounded, classified retries.

The runner is a small state machine::

    Attempting(1) -> Attempting(n+1) -> ... -> SUCCEEDED | ABORTED | GAVE_UP

* A handle without a connection string aborts immediately (documentation
  tooling builds the application without a database).
* Transient startup failures (the database container is still coming up) are
  retried every ``retry_interval`` seconds, at most ``max_attempts`` times.
* Anything else is logged and aborts.  Startup continues either way; a service
  running on an unmigrated schema shows up in health checks, not as a crash
  loop.

Clock, sleep and error classifier are injectable so tests can drive all
twenty attempts instantly.
"""

from __future__ import annotations

import enum
import errno
import socket
import time
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as package_version
from typing import Callable
from typing import Iterator
from typing import Optional
from typing import Protocol

from infracore.utils.log import get_logger

MAX_ATTEMPTS = 20
RETRY_INTERVAL_SECONDS = 1.0
LOG_FLUSH_DELAY_SECONDS = 1.0
READINESS_NOTICE_EVERY = 5

PRE_LOGIN_HANDSHAKE_MESSAGE = "an error occurred during the pre-login handshake"

# Socket errors seen while the database server is not yet listening.
_NOT_LISTENING_ERRNOS = frozenset(
    {
        errno.EINVAL,
        errno.ECONNREFUSED,
        errno.ECONNRESET,
        errno.ECONNABORTED,
        errno.EHOSTUNREACH,
        errno.ENETUNREACH,
    }
)

# ODBC drivers wrap socket failures instead of raising OSError: SQLSTATE 08001
# (unable to connect) / 08S01 (link failure), and "TCP Provider" codes for
# WSAECONNRESET, WSAETIMEDOUT and WSAECONNREFUSED.
_CONNECTION_SQLSTATES = frozenset({"08001", "08S01"})
_TCP_PROVIDER_ERROR_CODES = (10054, 10060, 10061)


class MigratableDatabase(Protocol):
    def get_connection_string(self) -> Optional[str]: ...

    def migrate(self) -> None: ...


class MigrationOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    ABORTED = "aborted"
    GAVE_UP = "gave_up"


@dataclass(frozen=True)
class MigrationResult:
    outcome: MigrationOutcome
    attempts: int
    reason: Optional[str] = None
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is MigrationOutcome.SUCCEEDED


def _error_chain(exc: BaseException) -> Iterator[BaseException]:
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        orig = getattr(current, "orig", None)
        if isinstance(orig, BaseException) and id(orig) not in seen:
            yield orig
            seen.add(id(orig))
        current = current.__cause__ or current.__context__


def is_transient_startup_error(exc: BaseException) -> bool:  # noqa: D401 – classifier
    """Return *True* when *exc* means the database is not accepting connections yet."""

    for error in _error_chain(exc):
        # Drivers (pyodbc, pymssql) report the handshake failure in the message.
        if PRE_LOGIN_HANDSHAKE_MESSAGE in str(error).lower():
            return True
        if isinstance(error, socket.error) and error.errno in _NOT_LISTENING_ERRNOS:
            return True
        if _is_driver_connection_failure(error):
            return True
    return False


def _is_driver_connection_failure(error: BaseException) -> bool:
    args = getattr(error, "args", ())
    if args and isinstance(args[0], str) and args[0].upper() in _CONNECTION_SQLSTATES:
        return True
    message = " ".join(str(arg) for arg in args)
    if "tcp provider" not in message.lower():
        return False
    return any(f"({code})" in message for code in _TCP_PROVIDER_ERROR_CODES)


def _package_version() -> str:
    try:
        return package_version("infracore")
    except PackageNotFoundError:
        return "unknown"


class MigrationRunner:
    """Applies pending migrations once per process start."""

    def __init__(
        self,
        *,
        max_attempts: int = MAX_ATTEMPTS,
        retry_interval: float = RETRY_INTERVAL_SECONDS,
        flush_delay: float = LOG_FLUSH_DELAY_SECONDS,
        deadline: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        is_transient: Callable[[BaseException], bool] = is_transient_startup_error,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.retry_interval = retry_interval
        self.flush_delay = flush_delay
        self.deadline = deadline
        self._sleep = sleep
        self._clock = clock
        self._is_transient = is_transient

    def run(self, database: MigratableDatabase) -> MigrationResult:
        logger = get_logger(component="migrations")
        logger.info("applying_database_migrations", version=_package_version())

        started = self._clock()
        attempt = 1
        last_error: Optional[BaseException] = None

        while True:
            if attempt % READINESS_NOTICE_EVERY == 0:
                logger.info("waiting_for_database_readiness", attempt=attempt, max_attempts=self.max_attempts)

            if database.get_connection_string() is None:
                # Expected when documentation tooling builds without a database.
                logger.critical("missing_connection_string_migration_aborted")
                return MigrationResult(MigrationOutcome.ABORTED, attempt, reason="no connection string")

            try:
                database.migrate()
            except Exception as exc:
                if not self._is_transient(exc):
                    logger.error("migration_failed", attempt=attempt, error=str(exc), exc_info=exc)
                    self._sleep(self.flush_delay)
                    return MigrationResult(MigrationOutcome.ABORTED, attempt, reason=str(exc), error=exc)

                last_error = exc
                if attempt >= self.max_attempts:
                    break
                if self.deadline is not None and self._clock() - started + self.retry_interval > self.deadline:
                    logger.critical(
                        "migration_deadline_exceeded",
                        attempt=attempt,
                        deadline=self.deadline,
                        error=str(exc),
                    )
                    return MigrationResult(MigrationOutcome.GAVE_UP, attempt, reason="deadline exceeded", error=exc)

                logger.debug("database_not_ready", attempt=attempt, error=str(exc))
                self._sleep(self.retry_interval)
                attempt += 1
                continue

            logger.info("database_migrations_finished", attempts=attempt)
            return MigrationResult(MigrationOutcome.SUCCEEDED, attempt)

        logger.critical(
            "database_never_became_ready",
            attempts=attempt,
            error=str(last_error) if last_error else None,
        )
        return MigrationResult(MigrationOutcome.GAVE_UP, attempt, reason="retries exhausted", error=last_error)


def apply_migrations(database: MigratableDatabase, **kwargs) -> MigrationResult:
    """Run pending migrations against *database*; never raises for database failures."""

    return MigrationRunner(**kwargs).run(database)


__all__ = [
    "MigrationOutcome",
    "MigrationResult",
    "MigrationRunner",
    "apply_migrations",
    "is_transient_startup_error",
]
