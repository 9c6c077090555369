"""Resource provisioning for the cloud and local deployment contexts.

These classes decide which concrete implementation of each shared resource
the process gets.  :func:`load_config` picks the class matching the resolved
:class:`~infracore.config.DeploymentContext`; the module-level
``provision_*`` helpers are thin shortcuts over it.
"""

from __future__ import annotations

import os
from abc import ABC
from abc import abstractmethod
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Dict
from typing import Mapping
from typing import Optional
from typing import Sequence

from azure.identity import DefaultAzureCredential
from azure.keyvault.secrets import SecretClient
from azure.storage.blob import BlobServiceClient

from infracore.config import DeploymentContext
from infracore.config import LocalConfiguration
from infracore.config import Settings
from infracore.core import implementations
from infracore.core.implementations import AzureBlobStorage
from infracore.core.implementations import AzureEmailService
from infracore.core.implementations import DevelopmentEmailService
from infracore.core.interfaces import BlobStorage
from infracore.core.interfaces import EmailService
from infracore.database import DatabaseHandle
from infracore.database import provision_database
from infracore.exceptions import MissingConfigurationError
from infracore.utils.log import get_logger


@dataclass(frozen=True)
class NamedResourceConnection:
    """One storage endpoint the application depends on.

    ``environment_variable`` holds the endpoint URL in the cloud; locally the
    ``connection_name`` is looked up in the local configuration instead.
    """

    connection_name: str
    environment_variable: str


@dataclass
class AppConfig(ABC):
    """Abstract base configuration for resource provisioning."""

    settings: Settings

    @abstractmethod
    def create_database(self, connection_name: str) -> DatabaseHandle:
        """Create database handle."""
        pass

    @abstractmethod
    def create_blob_stores(self, connections: Sequence[NamedResourceConnection]) -> Dict[str, BlobStorage]:
        """Create one blob store per named connection."""
        pass

    @abstractmethod
    def create_secret_store(self) -> Optional[SecretClient]:
        """Create secret store client, if the context has one."""
        pass

    @abstractmethod
    def create_email_service(self) -> EmailService:
        """Create outbound email transport."""
        pass


@dataclass
class CloudConfig(AppConfig):
    """Managed cloud deployment: environment endpoints and managed identity."""

    environ: Mapping[str, str] = field(default_factory=lambda: os.environ)
    script_location: Optional[Path] = None
    _credential: Optional[DefaultAzureCredential] = field(default=None, init=False, repr=False)
    _secret_client: Optional[SecretClient] = field(default=None, init=False, repr=False)

    @property
    def credential(self) -> DefaultAzureCredential:
        """The one credential every client in this process authenticates with."""
        if self._credential is None:
            self._credential = implementations.create_default_credential(self.settings.managed_identity_client_id)
        return self._credential

    def create_database(self, connection_name: str) -> DatabaseHandle:
        return provision_database(self.settings, connection_name, script_location=self.script_location)

    def create_blob_stores(self, connections: Sequence[NamedResourceConnection]) -> Dict[str, BlobStorage]:
        stores: Dict[str, BlobStorage] = {}
        for connection in connections:
            # A container can use several storage accounts, so each connection
            # names its own endpoint variable.
            endpoint = self.environ.get(connection.environment_variable)
            if not endpoint:
                raise MissingConfigurationError(connection.environment_variable, "environment variable")
            stores[connection.connection_name] = AzureBlobStorage(
                BlobServiceClient(endpoint, credential=self.credential)
            )
        return stores

    def create_secret_store(self) -> Optional[SecretClient]:
        if self._secret_client is None:
            self._secret_client = SecretClient(vault_url=self.settings.keyvault_url, credential=self.credential)
        return self._secret_client

    def create_email_service(self) -> EmailService:
        return AzureEmailService(self.create_secret_store(), self.settings.sender_email_address)


@dataclass
class LocalConfig(AppConfig):
    """Local development: configured connection strings and simulated services."""

    local_configuration: LocalConfiguration = field(default_factory=LocalConfiguration)
    script_location: Optional[Path] = None

    def create_database(self, connection_name: str) -> DatabaseHandle:
        return provision_database(
            self.settings,
            connection_name,
            local_configuration=self.local_configuration,
            script_location=self.script_location,
        )

    def create_blob_stores(self, connections: Sequence[NamedResourceConnection]) -> Dict[str, BlobStorage]:
        stores: Dict[str, BlobStorage] = {}
        for connection in connections:
            connection_string = self.local_configuration.get_connection_string(connection.connection_name)
            if not connection_string:
                raise MissingConfigurationError(connection.connection_name, "local connection string")
            stores[connection.connection_name] = AzureBlobStorage(
                BlobServiceClient.from_connection_string(connection_string)
            )
        return stores

    def create_secret_store(self) -> Optional[SecretClient]:
        return None

    def create_email_service(self) -> EmailService:
        return DevelopmentEmailService(self.settings.sender_email_address)


def load_config(settings: Settings, **kwargs) -> AppConfig:
    """Load provisioning configuration for the resolved deployment context."""

    logger = get_logger(component="provisioner")
    logger.info("deployment_context_resolved", context=settings.deployment_context.value)

    if settings.deployment_context is DeploymentContext.CLOUD:
        return CloudConfig(settings=settings, **kwargs)
    return LocalConfig(settings=settings, **kwargs)


# ---------------------------------------------------------------------------
# Shortcuts
# ---------------------------------------------------------------------------


def provision_blob_stores(
    settings: Settings, connections: Sequence[NamedResourceConnection], **kwargs
) -> Dict[str, BlobStorage]:
    return load_config(settings, **kwargs).create_blob_stores(connections)


def provision_secret_store(settings: Settings, **kwargs) -> Optional[SecretClient]:
    return load_config(settings, **kwargs).create_secret_store()


def provision_email_transport(settings: Settings, **kwargs) -> EmailService:
    return load_config(settings, **kwargs).create_email_service()
