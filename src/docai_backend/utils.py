"""
Filesystem and filename helpers for document uploads.
"""

from __future__ import annotations

import re
from pathlib import Path

from .models import DocumentType

# Characters that are not safe in stored filenames
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")

_EXTENSION_TYPES = {
    ".pdf": DocumentType.PDF,
    ".png": DocumentType.IMAGE,
    ".jpg": DocumentType.IMAGE,
    ".jpeg": DocumentType.IMAGE,
    ".gif": DocumentType.IMAGE,
    ".bmp": DocumentType.IMAGE,
    ".tif": DocumentType.IMAGE,
    ".tiff": DocumentType.IMAGE,
    ".webp": DocumentType.IMAGE,
    ".doc": DocumentType.WORD,
    ".docx": DocumentType.WORD,
    ".xls": DocumentType.EXCEL,
    ".xlsx": DocumentType.EXCEL,
    ".ppt": DocumentType.POWERPOINT,
    ".pptx": DocumentType.POWERPOINT,
    ".txt": DocumentType.TEXT,
    ".md": DocumentType.TEXT,
    ".csv": DocumentType.TEXT,
}


def sanitize_label(label: str, fallback: str) -> str:
    """
    Generate a filesystem-safe label from user input.

    Example:
        >>> sanitize_label("My Document!", "document")
        'my-document'
        >>> sanitize_label("@#$", "document")
        'document'
    """
    cleaned = SANITIZE_PATTERN.sub("-", label.strip())
    cleaned = cleaned.strip("-_.").lower()
    return cleaned or fallback


def ensure_directory(path: Path) -> Path:
    """Create a directory (and parents) if missing; returns the path for chaining."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def document_type_for(filename: str) -> DocumentType:
    """Map a filename's extension onto a document type; unknown extensions are 'other'."""
    return _EXTENSION_TYPES.get(Path(filename).suffix.lower(), DocumentType.OTHER)


def stored_filename(file_id: str, original: str) -> str:
    """Name an upload on disk: a unique id plus the original's sanitized extension."""
    extension = sanitize_label(Path(original).suffix, fallback="")
    return f"{file_id}.{extension}" if extension else file_id
