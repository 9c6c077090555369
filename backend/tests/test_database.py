"""Database handle: lazy engine, sessions and Alembic migrations."""

from urllib.parse import unquote_plus

import pytest
from sqlalchemy import inspect
from sqlalchemy import text

from infracore.database import DatabaseHandle
from infracore.database import to_sqlalchemy_url
from infracore.migrations import MigrationOutcome
from infracore.migrations import MigrationRunner
from infracore.utils.retry import RetryingExecutionStrategy

BASELINE_REVISION = "3c1d9e0a7b52"


def test_handle_does_not_connect_until_used(tmp_path):
    db_file = tmp_path / "lazy.db"
    handle = DatabaseHandle("lazy", f"sqlite:///{db_file}")

    assert not db_file.exists()
    assert handle.health_check() is True
    assert db_file.exists()


def test_engine_requires_connection_string():
    handle = DatabaseHandle("docs-build", None)

    assert handle.get_connection_string() is None
    with pytest.raises(RuntimeError):
        handle.engine


def test_migrate_applies_pending_revisions(sqlite_url):
    handle = DatabaseHandle("accounts", sqlite_url)

    handle.migrate()

    assert "alembic_version" in inspect(handle.engine).get_table_names()
    with handle.engine.connect() as conn:
        assert conn.execute(text("SELECT version_num FROM alembic_version")).scalar() == BASELINE_REVISION

    # Nothing pending the second time round.
    handle.migrate()
    handle.dispose()


def test_runner_migrates_real_database(sqlite_url, recording_sleep):
    handle = DatabaseHandle(
        "accounts",
        sqlite_url,
        execution_strategy=RetryingExecutionStrategy(sleep=recording_sleep),
        cloud_defaults=True,
    )

    result = MigrationRunner(sleep=recording_sleep).run(handle)

    assert result.outcome is MigrationOutcome.SUCCEEDED
    assert result.attempts == 1
    assert recording_sleep.calls == []
    handle.dispose()


def test_session_rolls_back_on_error(sqlite_url):
    handle = DatabaseHandle("accounts", sqlite_url)
    with handle.engine.begin() as conn:
        conn.execute(text("CREATE TABLE notes (id INTEGER PRIMARY KEY, body TEXT)"))

    with pytest.raises(ValueError):
        with handle.session() as session:
            session.execute(text("INSERT INTO notes (body) VALUES ('draft')"))
            raise ValueError("abandon")

    with handle.session() as session:
        session.execute(text("INSERT INTO notes (body) VALUES ('final')"))

    with handle.engine.connect() as conn:
        assert conn.execute(text("SELECT body FROM notes")).scalars().all() == ["final"]
    handle.dispose()


def test_health_check_reports_failure(tmp_path):
    handle = DatabaseHandle("broken", f"sqlite:///{tmp_path / 'missing-dir' / 'app.db'}")

    assert handle.health_check() is False


class TestConnectionStrings:
    def test_urls_pass_through(self):
        assert to_sqlalchemy_url("postgresql://app@db/accounts") == "postgresql://app@db/accounts"

    def test_ado_string_is_wrapped_for_pyodbc(self):
        url = to_sqlalchemy_url("Server=tcp:sql.example.net,1433;Database=accounts;Authentication=ActiveDirectoryMsi;")

        assert url.startswith("mssql+pyodbc:///?odbc_connect=")
        odbc = unquote_plus(url.split("odbc_connect=", 1)[1])
        assert odbc.startswith("Driver={ODBC Driver 18 for SQL Server};Server=tcp:sql.example.net,1433")
        assert not odbc.endswith(";")

    def test_explicit_driver_is_kept(self):
        url = to_sqlalchemy_url("Driver={FreeTDS};Server=localhost;Database=accounts")

        assert unquote_plus(url.split("odbc_connect=", 1)[1]).startswith("Driver={FreeTDS}")
