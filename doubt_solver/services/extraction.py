"""Text extraction for uploaded documents.

A remote file is downloaded to a throwaway local path, handed to the reader
for its category (PDF text layer, Word raw text, image OCR) and the local
copy is removed again whatever the outcome.
"""
import asyncio
import contextlib
import logging
import os
import re
import tempfile
import unicodedata
import zipfile
from typing import Optional

import httpx
import pytesseract
from PIL import Image, ImageFilter, ImageOps, UnidentifiedImageError

from doubt_solver.config import DOWNLOAD_TIMEOUT_SECONDS
from doubt_solver.errors import ExtractionError
from doubt_solver.services.file_types import UNKNOWN, processing_category

logger = logging.getLogger(__name__)

PDF_SIGNATURE = b"%PDF-"
OLE_SIGNATURE = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"
OCR_MIN_WIDTH = 1000
OCR_MIN_DENSITY = 150
OCR_TARGET_SIZE = 1500
DEFAULT_DENSITY = 72

_ALLOWED_PUNCTUATION = frozenset(".,!?;:()-\"'\u0964")
_INLINE_WHITESPACE = re.compile(r"[^\S\n]+")


def _is_allowed(ch: str) -> bool:
    if ch.isalnum() or ch == "_" or ch.isspace() or ch in _ALLOWED_PUNCTUATION:
        return True
    # combining marks carry the vowel signs of scripts such as Devanagari
    return unicodedata.category(ch).startswith("M")


def normalize_text(text: Optional[str]) -> str:
    if not text:
        return ""
    text = "".join(ch for ch in text if _is_allowed(ch))
    lines = (_INLINE_WHITESPACE.sub(" ", line).strip() for line in text.splitlines())
    return "\n".join(line for line in lines if line).strip()


# ============== readers ===============

def _join_elements(elements) -> str:
    return "\n".join(el.text for el in elements if getattr(el, "text", None))


def _pdf_elements(path: str):
    from unstructured.partition.pdf import partition_pdf
    return partition_pdf(filename=path, strategy="fast")


def _docx_elements(path: str):
    from unstructured.partition.docx import partition_docx
    return partition_docx(filename=path)


def _doc_elements(path: str):
    from unstructured.partition.doc import partition_doc
    return partition_doc(filename=path)


def extract_pdf_text(path: str) -> str:
    with open(path, "rb") as fh:
        header = fh.read(1024)
    if PDF_SIGNATURE not in header:
        raise ExtractionError("Failed to extract text from PDF: file is not a valid PDF (missing %PDF- header)")
    try:
        return _join_elements(_pdf_elements(path))
    except Exception as e:
        raise ExtractionError(f"Failed to extract text from PDF: {e}") from e


def extract_word_text(path: str, file_type: str) -> str:
    if os.path.getsize(path) == 0:
        raise ExtractionError("Failed to extract text from document: file is empty")

    with open(path, "rb") as fh:
        header = fh.read(len(OLE_SIGNATURE))
    if file_type == "docx" and header == OLE_SIGNATURE:
        # encrypted OOXML is wrapped in an OLE2 container instead of a zip
        raise ExtractionError("Failed to extract text from document: file is password-protected")

    try:
        elements = _docx_elements(path) if file_type == "docx" else _doc_elements(path)
    except zipfile.BadZipFile as e:
        raise ExtractionError("Failed to extract text from document: file is corrupt or not a Word document") from e
    except Exception as e:
        raise ExtractionError(f"Failed to extract text from document: {e}") from e
    return _join_elements(elements)


def image_density(image: Image.Image) -> float:
    dpi = image.info.get("dpi")
    if not dpi:
        return DEFAULT_DENSITY
    return float(dpi[0] if isinstance(dpi, (tuple, list)) else dpi)


def needs_ocr_optimization(image: Image.Image) -> bool:
    return image.width < OCR_MIN_WIDTH or image_density(image) < OCR_MIN_DENSITY


def optimize_image_for_ocr(image: Image.Image) -> Image.Image:
    """Upscale, sharpen and normalise small or low-density images.

    Falls back to the untouched image if any step fails.
    """
    if not needs_ocr_optimization(image):
        return image

    try:
        width, height = image.size
        target_width = max(width * 2, OCR_TARGET_SIZE)
        target_height = max(height * 2, OCR_TARGET_SIZE)
        scale = min(target_width / width, target_height / height)
        resized = image.convert("RGB").resize(
            (round(width * scale), round(height * scale)),
            Image.Resampling.LANCZOS,
        )
        return ImageOps.autocontrast(resized.filter(ImageFilter.SHARPEN))
    except (OSError, ValueError) as e:
        logger.warning("Image optimization failed, using original image: %s", e)
        return image


def extract_image_text(path: str) -> str:
    try:
        with Image.open(path) as image:
            image.load()
            prepared = optimize_image_for_ocr(image)
            if prepared.mode not in ("RGB", "L"):
                prepared = prepared.convert("RGB")
            text = pytesseract.image_to_string(prepared, lang="eng")
    except UnidentifiedImageError as e:
        raise ExtractionError("Failed to extract text from image: file is not a readable image") from e
    except (OSError, pytesseract.TesseractError) as e:
        raise ExtractionError(f"Failed to extract text from image: {e}") from e
    return text.strip()


def extract_local_file(path: str, file_type: str) -> str:
    category = processing_category(file_type)
    if category == "pdf":
        return extract_pdf_text(path)
    if category == "document":
        return extract_word_text(path, file_type)
    if category == "image":
        return extract_image_text(path)
    raise ExtractionError(f"Unsupported file type: {file_type}")


# ============== dispatcher ===============

class TextExtractor:
    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, timeout: float = DOWNLOAD_TIMEOUT_SECONDS):
        self._http_client = http_client
        self._timeout = timeout

    async def _download(self, url: str, destination: str) -> int:
        client = self._http_client or httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
        size = 0
        try:
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                with open(destination, "wb") as fh:
                    async for chunk in response.aiter_bytes():
                        fh.write(chunk)
                        size += len(chunk)
        except httpx.HTTPError as e:
            raise ExtractionError(f"Failed to download file: {e}") from e
        finally:
            if self._http_client is None:
                await client.aclose()
        return size

    async def extract(self, file_type: str, remote_url: str) -> str:
        if processing_category(file_type) == UNKNOWN:
            raise ExtractionError(f"Unsupported file type: {file_type}")

        fd, local_path = tempfile.mkstemp(prefix="doubt-solver-", suffix=f".{file_type}")
        os.close(fd)
        try:
            size = await self._download(remote_url, local_path)
            logger.debug("Downloaded %d bytes to %s", size, local_path)
            text = await asyncio.to_thread(extract_local_file, local_path, file_type)
        finally:
            with contextlib.suppress(FileNotFoundError):
                os.remove(local_path)

        return normalize_text(text)
