"""End-to-end startup sequence in the local context."""

from abc import ABC
from abc import abstractmethod

import pytest
from structlog.testing import capture_logs

from infracore.bootstrap import bootstrap
from infracore.config import get_settings
from infracore.core.config import LocalConfig
from infracore.core.config import NamedResourceConnection
from infracore.core.implementations import DevelopmentEmailService
from infracore.exceptions import AmbiguousBindingError
from infracore.exceptions import MissingConfigurationError
from infracore.migrations import MigrationOutcome
from infracore.migrations import MigrationRunner
from infracore.registry import RepositoryBase

from conftest import AZURITE_CONNECTION_STRING


class TenantRepository(ABC):
    @abstractmethod
    def exists(self, tenant_id: str) -> bool:
        pass


class SqlTenantRepository(RepositoryBase[dict, str], TenantRepository):
    def exists(self, tenant_id: str) -> bool:
        return False


@pytest.fixture
def repositories(module_factory):
    return module_factory("tenant_repositories", TenantRepository, SqlTenantRepository)


@pytest.fixture
def local_app_config(local_configuration):
    return LocalConfig(settings=get_settings(), local_configuration=local_configuration)


def test_local_bootstrap_wires_everything(monkeypatch, sqlite_url, repositories, local_app_config, recording_sleep):
    monkeypatch.setenv("ConnectionStrings__account-management", sqlite_url)
    monkeypatch.setenv("ConnectionStrings__avatars-storage", AZURITE_CONNECTION_STRING)

    infrastructure = bootstrap(
        connection_name="account-management",
        repository_modules=[repositories],
        blob_connections=[NamedResourceConnection("avatars-storage", "AVATARS_STORAGE_URL")],
        app_config=local_app_config,
        migration_runner=MigrationRunner(sleep=recording_sleep),
        setup_logging=False,
    )

    registry = infrastructure.registry
    assert infrastructure.migration.outcome is MigrationOutcome.SUCCEEDED
    assert registry.database.get_connection_string() == sqlite_url
    assert registry.secret_store is None
    assert isinstance(registry.email_service, DevelopmentEmailService)
    assert set(registry.blob_stores) == {"avatars-storage"}
    assert registry.repositories[TenantRepository] is SqlTenantRepository

    with registry.create_scope() as scope:
        assert scope.get(TenantRepository).exists("acme") is False

    registry.database.dispose()


def test_missing_connection_string_does_not_block_startup(repositories, local_app_config, recording_sleep):
    with capture_logs() as logs:
        infrastructure = bootstrap(
            connection_name="account-management",
            repository_modules=[repositories],
            app_config=local_app_config,
            migration_runner=MigrationRunner(sleep=recording_sleep),
            setup_logging=False,
        )

    assert infrastructure.migration.outcome is MigrationOutcome.ABORTED
    assert recording_sleep.calls == []
    assert any(entry["event"] == "missing_connection_string_migration_aborted" for entry in logs)
    assert any(entry["event"] == "bootstrap_finished" for entry in logs)


def test_migrations_can_be_skipped(local_app_config):
    infrastructure = bootstrap(
        connection_name="account-management",
        app_config=local_app_config,
        run_migrations=False,
        setup_logging=False,
    )

    assert infrastructure.migration is None


def test_ambiguous_repositories_abort_startup(module_factory, local_app_config):
    class OtherTenantRepository(RepositoryBase[dict, str], TenantRepository):
        def exists(self, tenant_id: str) -> bool:
            return True

    second = module_factory("more_tenant_repositories", OtherTenantRepository)
    first = module_factory("tenant_repositories_again", SqlTenantRepository)

    with pytest.raises(AmbiguousBindingError):
        bootstrap(
            connection_name="account-management",
            repository_modules=[first, second],
            app_config=local_app_config,
            run_migrations=False,
            setup_logging=False,
        )


def test_unconfigured_blob_storage_aborts_startup(local_app_config):
    with pytest.raises(MissingConfigurationError):
        bootstrap(
            connection_name="account-management",
            blob_connections=[NamedResourceConnection("avatars-storage", "AVATARS_STORAGE_URL")],
            app_config=local_app_config,
            run_migrations=False,
            setup_logging=False,
        )
