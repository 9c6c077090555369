"""Startup sequence: resolve, provision, register, migrate.

Everything runs synchronously on the startup path.  The caller gets back the
populated :class:`~infracore.registry.ServiceRegistry` together with the
migration outcome and decides when to start serving traffic.

Usage::

    from infracore.bootstrap import bootstrap
    from infracore.core.config import NamedResourceConnection

    import account_management.repositories

    infrastructure = bootstrap(
        connection_name="account-management",
        repository_modules=[account_management.repositories],
        blob_connections=[NamedResourceConnection("avatars", "AVATARS_STORAGE_URL")],
    )
"""

from __future__ import annotations

from dataclasses import dataclass
from types import ModuleType
from typing import Optional
from typing import Sequence

from infracore.config import Settings
from infracore.config import get_settings
from infracore.core.config import AppConfig
from infracore.core.config import NamedResourceConnection
from infracore.core.config import load_config
from infracore.migrations import MigrationResult
from infracore.migrations import MigrationRunner
from infracore.registry import Binding
from infracore.registry import ServiceRegistry
from infracore.registry import discover_repositories
from infracore.utils.log import configure_logging
from infracore.utils.log import get_logger


@dataclass(frozen=True)
class Infrastructure:
    settings: Settings
    registry: ServiceRegistry
    migration: Optional[MigrationResult]


def bootstrap(
    *,
    connection_name: str,
    repository_modules: Sequence[ModuleType] = (),
    blob_connections: Sequence[NamedResourceConnection] = (),
    settings: Optional[Settings] = None,
    app_config: Optional[AppConfig] = None,
    migration_runner: Optional[MigrationRunner] = None,
    run_migrations: bool = True,
    setup_logging: bool = True,
) -> Infrastructure:
    """Wire the process's infrastructure and bring the schema up to date.

    Args:
        connection_name: Logical name of the service database
        repository_modules: Modules/packages scanned for repository classes
        blob_connections: Named blob accounts the service uses
        settings: Pre-resolved settings, defaults to :func:`get_settings`
        app_config: Provisioning configuration, defaults to :func:`load_config`
        migration_runner: Runner to use, defaults to the standard bounded one
        run_migrations: Set to ``False`` for processes that never migrate
        setup_logging: Install the structlog processor chain

    Raises:
        AmbiguousBindingError: If repository discovery finds two
            implementations for one interface.
        MissingConfigurationError: If a named blob connection is not
            configured.
    """

    settings = settings or get_settings()
    if setup_logging:
        configure_logging(settings.log_level, settings.json_logs)

    logger = get_logger(component="bootstrap")
    logger.info("bootstrap_started", context=settings.deployment_context.value, connection=connection_name)

    config = app_config or load_config(settings)

    database = config.create_database(connection_name)
    blob_stores = config.create_blob_stores(blob_connections)
    secret_store = config.create_secret_store()
    email_service = config.create_email_service()

    bindings: list[Binding] = []
    for module in repository_modules:
        bindings.extend(discover_repositories(module))

    registry = ServiceRegistry.build(
        database=database,
        email_service=email_service,
        secret_store=secret_store,
        blob_stores=blob_stores,
        bindings=bindings,
    )

    migration = None
    if run_migrations:
        migration = (migration_runner or MigrationRunner()).run(database)

    logger.info(
        "bootstrap_finished",
        repositories=len(registry.repositories),
        blob_stores=sorted(registry.blob_stores),
        secret_store=secret_store is not None,
        migration=migration.outcome.value if migration else None,
    )
    return Infrastructure(settings=settings, registry=registry, migration=migration)


__all__ = ["Infrastructure", "bootstrap"]
