import os
import types
from typing import List
from typing import Optional

import pytest

from infracore.config import CLOUD_MARKER_VARIABLE
from infracore.config import DATABASE_CONNECTION_STRING_VARIABLE
from infracore.config import LOCAL_CONNECTION_STRING_PREFIX
from infracore.config import MANAGED_IDENTITY_CLIENT_ID_VARIABLE
from infracore.config import LocalConfiguration
from infracore.config import reset_settings

AZURITE_CONNECTION_STRING = (
    "DefaultEndpointsProtocol=http;AccountName=devstoreaccount1;"
    "AccountKey=Eby8vdM02xNOcqFlqUwJPLlmEtlCDXJ1OUzFT50uSRZ6IFsuFq2UVErCz4I6tq/K1SZFPTOtr/KBHBeksoGMGw==;"
    "BlobEndpoint=http://127.0.0.1:10000/devstoreaccount1;"
)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Every test starts in the local context with no cached settings."""

    for name in (
        CLOUD_MARKER_VARIABLE,
        DATABASE_CONNECTION_STRING_VARIABLE,
        MANAGED_IDENTITY_CLIENT_ID_VARIABLE,
        "SENDER_EMAIL_ADDRESS",
        "LOG_FORMAT_JSON",
    ):
        monkeypatch.delenv(name, raising=False)
    for name in list(os.environ):
        if name.startswith(LOCAL_CONNECTION_STRING_PREFIX):
            monkeypatch.delenv(name)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def cloud_environment(monkeypatch):
    monkeypatch.setenv(CLOUD_MARKER_VARIABLE, "https://kv-test.vault.azure.net/")
    monkeypatch.setenv(MANAGED_IDENTITY_CLIENT_ID_VARIABLE, "2f0b7c1e-identity")
    monkeypatch.setenv(DATABASE_CONNECTION_STRING_VARIABLE, "sqlite:///:memory:")
    reset_settings()


@pytest.fixture
def local_configuration(tmp_path):
    """Local configuration reading an empty, test-owned ``.env``."""

    env_file = tmp_path / ".env"
    env_file.write_text("")
    return LocalConfiguration(env_file=env_file)


@pytest.fixture
def sqlite_url(tmp_path):
    return f"sqlite:///{tmp_path / 'app.db'}"


class FakeDatabase:
    """Stands in for a DatabaseHandle; ``migrate`` raises the queued errors in order."""

    def __init__(self, connection_string: Optional[str] = "sqlite://", errors: Optional[List[BaseException]] = None):
        self.connection_string = connection_string
        self.errors = list(errors or [])
        self.migrate_calls = 0

    def get_connection_string(self) -> Optional[str]:
        return self.connection_string

    def migrate(self) -> None:
        self.migrate_calls += 1
        if self.errors:
            raise self.errors.pop(0)


class RecordingSleep:
    def __init__(self):
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def fake_database():
    return FakeDatabase


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


def make_module(name: str, *classes: type) -> types.ModuleType:
    """Build a throwaway module whose members are *classes*."""

    module = types.ModuleType(name)
    for cls in classes:
        cls.__module__ = name
        setattr(module, cls.__name__, cls)
    return module


@pytest.fixture
def module_factory():
    return make_module
