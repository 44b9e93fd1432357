"""
Helper Utilities Module.

Small, generic helpers shared across the pipeline.

Functions:
    - compute_fingerprint: Content address of a document
    - generate_id: Prefixed unique identifiers for jobs and records
    - guess_media_type: Media type from a file name
    - round_amount: Two-decimal rounding for currency values
    - format_file_size: Human-readable byte counts
    - ensure_directory: Create directory if it doesn't exist
"""

import hashlib
import mimetypes
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union


# Media types that mimetypes does not know on every platform
EXTRA_MEDIA_TYPES = {
    '.csv': 'text/csv',
    '.xlsx': 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
    '.webp': 'image/webp',
    '.tif': 'image/tiff',
    '.tiff': 'image/tiff',
    '.txt': 'text/plain',
}


def compute_fingerprint(data: bytes, media_type: str, category: str) -> str:
    """
    Compute the content fingerprint of a document.

    The fingerprint is a SHA-256 digest over the raw bytes, the declared
    media type and the declared category, so the same file declared as
    sales and as purchases is cached separately.

    Args:
        data: Raw document bytes.
        media_type: Declared media type.
        category: Declared document category.

    Returns:
        Hex-encoded SHA-256 digest.
    """
    digest = hashlib.sha256()
    digest.update(data)
    digest.update(b"\x00")
    digest.update(media_type.strip().lower().encode("utf-8"))
    digest.update(b"\x00")
    digest.update(str(category).strip().lower().encode("utf-8"))
    return digest.hexdigest()


def generate_id(prefix: str) -> str:
    """Return a unique identifier such as ``job_3f9c0b6a1d2e``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def utc_now() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def generate_timestamp(format_str: str = "%Y%m%d_%H%M%S") -> str:
    """
    Generate a formatted timestamp string.

    Example:
        >>> generate_timestamp("%Y-%m-%d")
        "2026-01-21"
    """
    return datetime.now().strftime(format_str)


def guess_media_type(filepath: Union[str, Path]) -> Optional[str]:
    """
    Guess a document's media type from its file extension.

    Args:
        filepath: Path or file name.

    Returns:
        Media type string, or None when the extension is unknown.
    """
    suffix = Path(filepath).suffix.lower()
    if suffix in EXTRA_MEDIA_TYPES:
        return EXTRA_MEDIA_TYPES[suffix]
    media_type, _ = mimetypes.guess_type(str(filepath))
    return media_type


def round_amount(value: float) -> float:
    """Round a currency value to cents."""
    return round(float(value), 2) + 0.0


def format_file_size(size_bytes: float) -> str:
    """
    Format a byte count in human-readable form.

    Example:
        >>> format_file_size(1536)
        "1.5 KB"
    """
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if size_bytes < 1024.0:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def ensure_directory(path: Union[str, Path]) -> Path:
    """Create a directory and its parents if needed, returning it as a Path."""
    dir_path = Path(path)
    dir_path.mkdir(parents=True, exist_ok=True)
    return dir_path
