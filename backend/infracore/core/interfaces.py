"""Contracts for the shared resources the bootstrapper provisions.

Application code depends on these, never on the concrete cloud or local
classes.
"""

from __future__ import annotations

from abc import ABC
from abc import abstractmethod
from dataclasses import dataclass
from dataclasses import field
from typing import List
from typing import Optional


@dataclass(frozen=True)
class EmailMessage:
    recipient: str
    subject: str
    html_content: str
    sender: Optional[str] = None
    cc: List[str] = field(default_factory=list)


class BlobStorage(ABC):
    """Named blob account."""

    @abstractmethod
    def upload(self, container_name: str, blob_name: str, data: bytes, content_type: str) -> None:
        pass

    @abstractmethod
    def download(self, container_name: str, blob_name: str) -> Optional[bytes]:
        """Return the blob content, or ``None`` when it does not exist."""
        pass

    @abstractmethod
    def delete(self, container_name: str, blob_name: str) -> bool:
        pass

    @abstractmethod
    def get_blob_url(self, container_name: str, blob_name: str) -> str:
        pass


class EmailService(ABC):
    """Outbound email transport."""

    @abstractmethod
    def send(self, message: EmailMessage) -> None:
        pass
