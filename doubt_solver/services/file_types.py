import logging
import os
from typing import Optional
from urllib.parse import unquote, urlsplit

logger = logging.getLogger(__name__)

SUPPORTED_FILE_TYPES = ("pdf", "doc", "docx", "jpg", "jpeg", "png", "gif")
UNKNOWN = "unknown"

MIME_TYPE_MAP = {
    "application/pdf": "pdf",
    "application/msword": "doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/vnd.ms-word": "doc",
    "application/word": "doc",
    "application/x-msword": "doc",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
}


def is_supported_file_type(value: Optional[str]) -> bool:
    return bool(value) and value.lower() in SUPPORTED_FILE_TYPES


def extension_from_mime_type(mime_type: Optional[str]) -> Optional[str]:
    if not mime_type:
        return None
    return MIME_TYPE_MAP.get(mime_type.strip().lower())


def _extension(name: str) -> str:
    return os.path.splitext(name)[1].lower().lstrip(".")


def extension_from_url(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    path = urlsplit(url).path
    last_part = path.rsplit("/", 1)[-1]
    if "." in last_part:
        return _extension(last_part)

    # storage providers may percent-encode the original name
    decoded_last_part = unquote(path).rsplit("/", 1)[-1]
    if "." in decoded_last_part:
        return _extension(decoded_last_part)
    return None


def detect_file_type(filename: Optional[str], mime_type: Optional[str], url: Optional[str]) -> str:
    """Resolve a supported file type tag, or "unknown".

    Evidence is tried in order of reliability: MIME type, then the original
    filename extension, then the extension in the storage URL.
    """
    candidates = (
        ("mime type", extension_from_mime_type(mime_type)),
        ("filename", _extension(filename) if filename else None),
        ("url", extension_from_url(url)),
    )
    for source, candidate in candidates:
        if is_supported_file_type(candidate):
            logger.debug("File type %s resolved from %s", candidate, source)
            return candidate.lower()

    logger.debug("Could not detect file type for %r (%r, %r)", filename, mime_type, url)
    return UNKNOWN


def processing_category(file_type: str) -> str:
    if file_type == "pdf":
        return "pdf"
    if file_type in ("doc", "docx"):
        return "document"
    if file_type in ("jpg", "jpeg", "png", "gif"):
        return "image"
    return UNKNOWN
