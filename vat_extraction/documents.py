"""
Document Model.

Defines the uploaded document record, its declared category and its
processing lifecycle.

Lifecycle:
    uploaded -> queued -> processing -> succeeded | failed
    succeeded -> corrected                  (accepted feedback)
    succeeded | failed | corrected -> queued (forced re-extraction only)

Author: ML Engineering Team
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from vat_extraction.utils.exceptions import InvalidTransitionError
from vat_extraction.utils.helpers import utc_now


class Category(str, Enum):
    """Declared document category."""

    SALES = "sales"
    PURCHASES = "purchases"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> 'Category':
        """Accept a Category or its string value (case-insensitive)."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown category '{value}', expected one of "
                f"{[c.value for c in cls]}"
            ) from None


class DocumentStatus(str, Enum):
    UPLOADED = "uploaded"
    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CORRECTED = "corrected"


# Regular transitions; re-queueing a finished document needs force=True
_TRANSITIONS = {
    DocumentStatus.UPLOADED: {DocumentStatus.QUEUED, DocumentStatus.PROCESSING},
    DocumentStatus.QUEUED: {DocumentStatus.PROCESSING, DocumentStatus.FAILED},
    DocumentStatus.PROCESSING: {DocumentStatus.SUCCEEDED, DocumentStatus.FAILED},
    DocumentStatus.SUCCEEDED: {DocumentStatus.CORRECTED},
    DocumentStatus.FAILED: set(),
    DocumentStatus.CORRECTED: set(),
}

_FORCED_REQUEUE_FROM = {
    DocumentStatus.SUCCEEDED,
    DocumentStatus.FAILED,
    DocumentStatus.CORRECTED,
}


@dataclass
class Document:
    """
    An uploaded financial document.

    The byte payload is owned by storage and referenced by fingerprint;
    the record itself only carries metadata.

    Attributes:
        id: Document identifier.
        fingerprint: SHA-256 over bytes, media type and category.
        media_type: Declared media type.
        category: Declared category.
        size_bytes: Payload size.
        filename: Original file name, if known.
        status: Current lifecycle status.
        owner_id: Acting user at upload time.
        error: Reason of the last failure.
    """
    id: str
    fingerprint: str
    media_type: str
    category: Category
    size_bytes: int = 0
    filename: Optional[str] = None
    status: DocumentStatus = DocumentStatus.UPLOADED
    owner_id: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def can_transition(self, target: DocumentStatus, force: bool = False) -> bool:
        if target in _TRANSITIONS[self.status]:
            return True
        return (
            force
            and target == DocumentStatus.QUEUED
            and self.status in _FORCED_REQUEUE_FROM
        )

    def transition(self, target: DocumentStatus, force: bool = False,
                   error: Optional[str] = None) -> None:
        """
        Move the document to a new lifecycle status.

        Args:
            target: Status to move to.
            force: Allow re-queueing a finished document.
            error: Failure reason, stored when moving to FAILED.

        Raises:
            InvalidTransitionError: If the move is not allowed.
        """
        if not self.can_transition(target, force=force):
            raise InvalidTransitionError("document", self.status.value, target.value)
        self.status = target
        self.error = error if target == DocumentStatus.FAILED else None
        self.updated_at = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'fingerprint': self.fingerprint,
            'media_type': self.media_type,
            'category': self.category.value,
            'size_bytes': self.size_bytes,
            'filename': self.filename,
            'status': self.status.value,
            'owner_id': self.owner_id,
            'error': self.error,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
        }

    def __repr__(self) -> str:
        return (
            f"Document(id='{self.id}', category='{self.category.value}', "
            f"status='{self.status.value}')"
        )
