"""
Storage and Identity Collaborators.

The pipeline persists documents, payloads, results and feedback through
the Storage interface and asks an IdentityProvider for the acting user.
Production deployments plug in their own implementations; the in-memory
versions here back the CLI and the test-suite.

Classes:
    Storage: Abstract persistence interface
    InMemoryStorage: Thread-safe dictionary-backed storage
    IdentityProvider: Abstract acting-user lookup
    StaticIdentity: Identity provider returning a fixed user id
"""

import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from vat_extraction.documents import Document
from vat_extraction.utils.logger import get_logger

# Initialize module logger
logger = get_logger(__name__)


class Storage(ABC):
    """Persistence interface used by the pipeline."""

    @abstractmethod
    def save_document(self, document: Document, data: bytes) -> None:
        """Store a document record together with its byte payload."""

    @abstractmethod
    def update_document(self, document: Document) -> None:
        """Persist a changed document record."""

    @abstractmethod
    def get_document(self, document_id: str) -> Optional[Document]:
        """Return the document record, or None."""

    @abstractmethod
    def find_document(self, fingerprint: str) -> Optional[Document]:
        """Return the document with this fingerprint, or None."""

    @abstractmethod
    def get_payload(self, document_id: str) -> Optional[bytes]:
        """Return the raw bytes of a document, or None."""

    @abstractmethod
    def delete_document(self, document_id: str) -> bool:
        """Delete a document, its payload and its result."""

    @abstractmethod
    def save_result(self, document_id: str, result: Any) -> None:
        """Store the latest extraction result of a document."""

    @abstractmethod
    def get_result(self, document_id: str) -> Optional[Any]:
        """Return the latest extraction result of a document, or None."""

    @abstractmethod
    def save_feedback(self, record: Any) -> None:
        """Insert or replace a feedback record (keyed by record.id)."""

    @abstractmethod
    def list_feedback(self, template_id: Optional[str] = None) -> List[Any]:
        """Return feedback records, optionally filtered by template id."""


class InMemoryStorage(Storage):
    """
    Dictionary-backed Storage guarded by a single lock.

    Example:
        >>> storage = InMemoryStorage()
        >>> storage.save_document(document, b"%PDF-1.7 ...")
        >>> storage.get_document(document.id).status
        <DocumentStatus.UPLOADED: 'uploaded'>
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._documents: Dict[str, Document] = {}
        self._payloads: Dict[str, bytes] = {}
        self._results: Dict[str, Any] = {}
        self._feedback: Dict[str, Any] = {}

    def save_document(self, document: Document, data: bytes) -> None:
        with self._lock:
            self._documents[document.id] = document
            self._payloads[document.id] = bytes(data)
        logger.debug(f"Stored document {document.id} ({len(data)} bytes)")

    def update_document(self, document: Document) -> None:
        with self._lock:
            self._documents[document.id] = document

    def get_document(self, document_id: str) -> Optional[Document]:
        with self._lock:
            return self._documents.get(document_id)

    def find_document(self, fingerprint: str) -> Optional[Document]:
        with self._lock:
            for document in self._documents.values():
                if document.fingerprint == fingerprint:
                    return document
        return None

    def get_payload(self, document_id: str) -> Optional[bytes]:
        with self._lock:
            return self._payloads.get(document_id)

    def delete_document(self, document_id: str) -> bool:
        with self._lock:
            existed = self._documents.pop(document_id, None) is not None
            self._payloads.pop(document_id, None)
            self._results.pop(document_id, None)
        if existed:
            logger.debug(f"Deleted document {document_id}")
        return existed

    def save_result(self, document_id: str, result: Any) -> None:
        with self._lock:
            self._results[document_id] = result

    def get_result(self, document_id: str) -> Optional[Any]:
        with self._lock:
            return self._results.get(document_id)

    def save_feedback(self, record: Any) -> None:
        with self._lock:
            self._feedback[record.id] = record

    def list_feedback(self, template_id: Optional[str] = None) -> List[Any]:
        with self._lock:
            records = list(self._feedback.values())
        if template_id is not None:
            records = [r for r in records if r.template_id == template_id]
        return sorted(records, key=lambda r: r.created_at)


class IdentityProvider(ABC):
    """Resolves the acting user for auditing feedback and uploads."""

    @abstractmethod
    def current_user_id(self) -> str:
        """Return the id of the acting user."""


class StaticIdentity(IdentityProvider):
    """Identity provider for single-user and command-line runs."""

    def __init__(self, user_id: str = "anonymous") -> None:
        self.user_id = user_id

    def current_user_id(self) -> str:
        return self.user_id
