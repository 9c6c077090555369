"""Concrete implementations of the shared resource contracts.

Cloud implementations wrap the Azure SDK clients; the development email
service captures messages locally.  Construction never performs I/O: the SDK
clients only talk to the network when a method is called.
"""

from __future__ import annotations

import threading
from typing import List
from typing import Optional

from azure.communication.email import EmailClient
from azure.core.exceptions import ResourceNotFoundError
from azure.identity import DefaultAzureCredential
from azure.keyvault.secrets import SecretClient
from azure.storage.blob import BlobServiceClient
from azure.storage.blob import ContentSettings

from infracore.core.interfaces import BlobStorage
from infracore.core.interfaces import EmailMessage
from infracore.core.interfaces import EmailService
from infracore.utils.log import get_logger

# Key vault secret holding the Communication Services connection string.
EMAIL_CONNECTION_SECRET_NAME = "communication-services-connection-string"


def create_default_credential(managed_identity_client_id: Optional[str]) -> DefaultAzureCredential:
    """Credential for workloads running under a user-assigned managed identity."""

    return DefaultAzureCredential(managed_identity_client_id=managed_identity_client_id)


class AzureBlobStorage(BlobStorage):
    """Blob account backed by a :class:`BlobServiceClient`.

    Used for both contexts: in the cloud the client authenticates with the
    managed identity, locally it is built from the emulator connection string.
    """

    def __init__(self, client: BlobServiceClient):
        self.client = client

    def upload(self, container_name: str, blob_name: str, data: bytes, content_type: str) -> None:
        blob = self.client.get_blob_client(container=container_name, blob=blob_name)
        blob.upload_blob(data, overwrite=True, content_settings=ContentSettings(content_type=content_type))

    def download(self, container_name: str, blob_name: str) -> Optional[bytes]:
        blob = self.client.get_blob_client(container=container_name, blob=blob_name)
        try:
            return blob.download_blob().readall()
        except ResourceNotFoundError:
            return None

    def delete(self, container_name: str, blob_name: str) -> bool:
        blob = self.client.get_blob_client(container=container_name, blob=blob_name)
        try:
            blob.delete_blob()
        except ResourceNotFoundError:
            return False
        return True

    def get_blob_url(self, container_name: str, blob_name: str) -> str:
        return self.client.get_blob_client(container=container_name, blob=blob_name).url


class AzureEmailService(EmailService):
    """Sends through Azure Communication Services.

    The connection string lives in the key vault; it is fetched on the first
    send so that provisioning stays free of network calls.
    """

    def __init__(self, secret_client: SecretClient, sender_address: str):
        self.secret_client = secret_client
        self.sender_address = sender_address
        self._client: Optional[EmailClient] = None
        self._lock = threading.Lock()

    def _email_client(self) -> EmailClient:
        if self._client is None:
            with self._lock:
                if self._client is None:
                    secret = self.secret_client.get_secret(EMAIL_CONNECTION_SECRET_NAME)
                    self._client = EmailClient.from_connection_string(secret.value)
        return self._client

    def send(self, message: EmailMessage) -> None:
        payload = {
            "senderAddress": message.sender or self.sender_address,
            "recipients": {
                "to": [{"address": message.recipient}],
                "cc": [{"address": address} for address in message.cc],
            },
            "content": {"subject": message.subject, "html": message.html_content},
        }
        poller = self._email_client().begin_send(payload)
        result = poller.result()
        get_logger(component="email").info(
            "email_sent",
            recipient=message.recipient,
            subject=message.subject,
            status=result.get("status") if isinstance(result, dict) else None,
        )


class DevelopmentEmailService(EmailService):
    """Local transport: logs and captures messages, never sends them anywhere."""

    def __init__(self, sender_address: str):
        self.sender_address = sender_address
        self.outbox: List[EmailMessage] = []
        self._lock = threading.Lock()

    def send(self, message: EmailMessage) -> None:
        if message.sender is None:
            message = EmailMessage(
                recipient=message.recipient,
                subject=message.subject,
                html_content=message.html_content,
                sender=self.sender_address,
                cc=list(message.cc),
            )
        with self._lock:
            self.outbox.append(message)
        get_logger(component="email").info(
            "email_captured",
            recipient=message.recipient,
            subject=message.subject,
        )
