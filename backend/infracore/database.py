"""Relational database handle, engine construction and unit-of-work sessions.

A :class:`DatabaseHandle` is what the provisioner hands out.  It is a *lazy*
handle: the SQLAlchemy engine is only built the first time somebody needs a
connection, so provisioning never touches the network.  The handle may carry
no connection string at all (documentation tooling builds the application
without a runtime environment); callers that need a database check
:meth:`DatabaseHandle.get_connection_string` first.
"""

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any
from typing import Dict
from typing import Iterator
from typing import Optional
from urllib.parse import quote_plus

from alembic import command
from alembic.config import Config as AlembicConfig
from sqlalchemy import Engine
from sqlalchemy import create_engine
from sqlalchemy import event
from sqlalchemy import text
from sqlalchemy.orm import Session
from sqlalchemy.orm import sessionmaker

from infracore.config import DeploymentContext
from infracore.config import LocalConfiguration
from infracore.config import Settings
from infracore.utils.log import get_logger
from infracore.utils.retry import ExecutionStrategy
from infracore.utils.retry import NonRetryingExecutionStrategy
from infracore.utils.retry import RetryingExecutionStrategy

# backend/alembic, next to the package
DEFAULT_SCRIPT_LOCATION = Path(__file__).resolve().parents[1] / "alembic"


def to_sqlalchemy_url(connection_string: str) -> str:
    """Turn a deployment connection string into a SQLAlchemy URL.

    URLs (anything with ``://``) pass through.  ADO/ODBC style
    ``Server=...;Database=...`` strings are wrapped for ``mssql+pyodbc``.
    """

    if "://" in connection_string:
        return connection_string

    odbc = connection_string.strip().rstrip(";")
    if "driver=" not in odbc.lower():
        odbc = "Driver={ODBC Driver 18 for SQL Server};" + odbc
    return f"mssql+pyodbc:///?odbc_connect={quote_plus(odbc)}"


def make_engine(db_url: str, *, cloud_defaults: bool = False, **kwargs) -> Engine:
    """Create a SQLAlchemy engine with the given URL and options.

    Args:
        db_url: Database connection URL
        cloud_defaults: Apply the managed-database reliability defaults
        **kwargs: Additional arguments for create_engine

    Returns:
        A SQLAlchemy Engine instance
    """
    connect_args = kwargs.pop("connect_args", {})
    if "sqlite" in db_url:
        if "check_same_thread" not in connect_args:
            connect_args["check_same_thread"] = False
        connect_args.setdefault("timeout", 30)

    if cloud_defaults:
        # Dropped connections after failover are detected before use and
        # recycled well inside the gateway idle timeout.
        kwargs.setdefault("pool_pre_ping", True)
        kwargs.setdefault("pool_recycle", 1800)
        if db_url.startswith("mssql"):
            connect_args.setdefault("timeout", 30)

    return create_engine(db_url, connect_args=connect_args, **kwargs)


def make_sessionmaker(engine: Engine) -> sessionmaker:
    """Create a sessionmaker bound to the given engine."""

    # Repositories hand entities back to callers after the unit of work
    # commits, so attributes must stay loaded.
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


def enrich_engine(engine: Engine) -> Engine:
    """Attach connection-resiliency instrumentation to *engine*."""

    logger = get_logger(component="database")

    @event.listens_for(engine, "handle_error")
    def _log_connection_errors(context):  # noqa: ANN001 – SQLAlchemy hook
        if context.is_disconnect:
            logger.warning(
                "database_connection_invalidated",
                error=str(context.original_exception),
            )

    return engine


class DatabaseHandle:
    """Lazy database handle shared for the process lifetime."""

    def __init__(
        self,
        connection_name: str,
        connection_string: Optional[str],
        *,
        execution_strategy: Optional[ExecutionStrategy] = None,
        cloud_defaults: bool = False,
        script_location: Optional[Path] = None,
        engine_options: Optional[Dict[str, Any]] = None,
    ):
        self.connection_name = connection_name
        self._connection_string = connection_string
        self.execution_strategy = execution_strategy or NonRetryingExecutionStrategy()
        self.cloud_defaults = cloud_defaults
        self.script_location = script_location or DEFAULT_SCRIPT_LOCATION
        self._engine_options = dict(engine_options or {})
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        configured = "configured" if self._connection_string else "unconfigured"
        return f"<DatabaseHandle {self.connection_name} {configured}>"

    def get_connection_string(self) -> Optional[str]:
        return self._connection_string

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            with self._lock:
                if self._engine is None:
                    if not self._connection_string:
                        raise RuntimeError(f"No connection string configured for '{self.connection_name}'")
                    engine = make_engine(
                        to_sqlalchemy_url(self._connection_string),
                        cloud_defaults=self.cloud_defaults,
                        **self._engine_options,
                    )
                    if self.cloud_defaults:
                        enrich_engine(engine)
                    self._engine = engine
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            self._session_factory = make_sessionmaker(self.engine)
        return self._session_factory

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Unit-of-work session: commit on success, rollback on error, always close."""

        logger = get_logger(component="database")
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error("database_session_rolled_back", error=str(e))
            raise
        finally:
            session.close()

    def health_check(self) -> bool:
        """Return *True* when a trivial query succeeds."""

        logger = get_logger(component="database")
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.warning("database_health_check_failed", connection=self.connection_name, error=str(e))
            return False

    def alembic_config(self) -> AlembicConfig:
        cfg = AlembicConfig()
        cfg.set_main_option("script_location", str(self.script_location))
        return cfg

    def migrate(self, revision: str = "head") -> None:
        """Apply every pending Alembic revision through the execution strategy."""

        def _upgrade() -> None:
            cfg = self.alembic_config()
            with self.engine.begin() as connection:
                cfg.attributes["connection"] = connection
                command.upgrade(cfg, revision)

        self.execution_strategy.execute(_upgrade)

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None


def provision_database(
    settings: Settings,
    connection_name: str,
    *,
    local_configuration: Optional[LocalConfiguration] = None,
    script_location: Optional[Path] = None,
) -> DatabaseHandle:
    """Build the database handle the deployment context calls for.

    The connection string may legitimately be missing; no validation happens
    here.
    """

    logger = get_logger(component="database")

    if settings.deployment_context is DeploymentContext.CLOUD:
        handle = DatabaseHandle(
            connection_name,
            settings.database_connection_string,
            execution_strategy=RetryingExecutionStrategy(),
            cloud_defaults=True,
            script_location=script_location,
        )
    else:
        local = local_configuration or LocalConfiguration()
        handle = DatabaseHandle(
            connection_name,
            local.get_connection_string(connection_name),
            execution_strategy=NonRetryingExecutionStrategy(),
            script_location=script_location,
        )

    logger.info(
        "database_provisioned",
        connection=connection_name,
        context=settings.deployment_context.value,
        configured=handle.get_connection_string() is not None,
    )
    return handle


__all__ = [
    "DatabaseHandle",
    "enrich_engine",
    "make_engine",
    "make_sessionmaker",
    "provision_database",
    "to_sqlalchemy_url",
]
