import asyncio
import os
import zipfile
from types import SimpleNamespace

import httpx
import pytest
from PIL import Image

from doubt_solver.errors import ExtractionError
from doubt_solver.services import extraction
from doubt_solver.services.extraction import (
    OLE_SIGNATURE,
    TextExtractor,
    extract_image_text,
    extract_local_file,
    extract_pdf_text,
    extract_word_text,
    needs_ocr_optimization,
    normalize_text,
    optimize_image_for_ocr,
)


def _elements(*texts):
    return [SimpleNamespace(text=t) for t in texts]


# ============== normalizer ===============

def test_normalize_collapses_whitespace_and_drops_blank_lines():
    raw = "Hello   world\t!\n\n   \n  Line two @#  \n"
    assert normalize_text(raw) == "Hello world !\nLine two"


def test_normalize_keeps_allowed_punctuation():
    raw = 'Q1: What is (a + b)? "Quote" - it\'s fine; ok.'
    assert normalize_text(raw) == 'Q1: What is (a b)? "Quote" - it\'s fine; ok.'


def test_normalize_keeps_hindi_with_vowel_signs():
    raw = "नमस्ते दुनिया! कोशिका का ऊर्जा केंद्र @ माइटोकॉन्ड्रिया है।"
    assert normalize_text(raw) == "नमस्ते दुनिया! कोशिका का ऊर्जा केंद्र माइटोकॉन्ड्रिया है।"


def test_normalize_empty():
    assert normalize_text("") == ""
    assert normalize_text(None) == ""


# ============== pdf ===============

def test_pdf_without_signature_is_rejected(tmp_path):
    path = tmp_path / "fake.pdf"
    path.write_bytes(b"<html>not a pdf</html>")
    with pytest.raises(ExtractionError, match="not a valid PDF"):
        extract_pdf_text(str(path))


def test_pdf_text_layer_is_joined(tmp_path, monkeypatch):
    path = tmp_path / "doc.pdf"
    path.write_bytes(b"%PDF-1.7\n...")
    monkeypatch.setattr(extraction, "_pdf_elements", lambda p: _elements("Chapter 1", "", "Intro"))
    assert extract_pdf_text(str(path)) == "Chapter 1\nIntro"


def test_pdf_parser_failure_becomes_extraction_error(tmp_path, monkeypatch):
    path = tmp_path / "doc.pdf"
    path.write_bytes(b"%PDF-1.4\n")

    def boom(p):
        raise RuntimeError("broken xref table")

    monkeypatch.setattr(extraction, "_pdf_elements", boom)
    with pytest.raises(ExtractionError, match="broken xref table"):
        extract_pdf_text(str(path))


# ============== word ===============

def test_empty_word_file_is_rejected(tmp_path):
    path = tmp_path / "empty.docx"
    path.write_bytes(b"")
    with pytest.raises(ExtractionError, match="empty"):
        extract_word_text(str(path), "docx")


def test_ole_container_docx_is_password_protected(tmp_path):
    path = tmp_path / "locked.docx"
    path.write_bytes(OLE_SIGNATURE + b"\x00" * 64)
    with pytest.raises(ExtractionError, match="password-protected"):
        extract_word_text(str(path), "docx")


def test_corrupt_docx(tmp_path, monkeypatch):
    path = tmp_path / "broken.docx"
    path.write_bytes(b"PK\x03\x04garbage")

    def bad_zip(p):
        raise zipfile.BadZipFile("File is not a zip file")

    monkeypatch.setattr(extraction, "_docx_elements", bad_zip)
    with pytest.raises(ExtractionError, match="corrupt"):
        extract_word_text(str(path), "docx")


def test_doc_uses_legacy_reader(tmp_path, monkeypatch):
    path = tmp_path / "old.doc"
    path.write_bytes(OLE_SIGNATURE + b"\x00" * 64)
    monkeypatch.setattr(extraction, "_doc_elements", lambda p: _elements("Legacy text"))
    assert extract_word_text(str(path), "doc") == "Legacy text"


# ============== images ===============

def test_small_image_is_upscaled_for_ocr():
    image = Image.new("RGB", (400, 300), "white")
    assert needs_ocr_optimization(image)
    optimized = optimize_image_for_ocr(image)
    assert optimized.size == (1500, 1125)


def test_large_high_density_image_is_left_alone():
    image = Image.new("RGB", (1200, 800), "white")
    image.info["dpi"] = (300, 300)
    assert not needs_ocr_optimization(image)
    assert optimize_image_for_ocr(image) is image


def test_missing_density_counts_as_low():
    image = Image.new("RGB", (2000, 1000), "white")
    assert needs_ocr_optimization(image)


def test_optimization_failure_falls_back_to_original(monkeypatch):
    image = Image.new("RGB", (200, 200), "white")

    def broken_autocontrast(img):
        raise OSError("image file is truncated")

    monkeypatch.setattr(extraction.ImageOps, "autocontrast", broken_autocontrast)
    assert optimize_image_for_ocr(image) is image


def test_image_ocr(tmp_path, monkeypatch):
    path = tmp_path / "scan.png"
    Image.new("RGB", (300, 200), "white").save(path)
    seen = {}

    def fake_ocr(image, lang):
        seen["size"] = image.size
        seen["lang"] = lang
        return "  Solve for x  \n"

    monkeypatch.setattr(extraction.pytesseract, "image_to_string", fake_ocr)
    assert extract_image_text(str(path)) == "Solve for x"
    assert seen["lang"] == "eng"
    assert seen["size"][0] >= 1500


def test_unreadable_image(tmp_path):
    path = tmp_path / "scan.png"
    path.write_bytes(b"definitely not png data")
    with pytest.raises(ExtractionError, match="not a readable image"):
        extract_image_text(str(path))


def test_unknown_type_is_rejected(tmp_path):
    path = tmp_path / "notes.txt"
    path.write_text("hello")
    with pytest.raises(ExtractionError, match="Unsupported file type"):
        extract_local_file(str(path), "txt")


# ============== dispatcher ===============

def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_extract_downloads_parses_and_normalizes(monkeypatch):
    def handler(request):
        return httpx.Response(200, content=b"%PDF-1.5\nbody")

    monkeypatch.setattr(extraction, "_pdf_elements", lambda p: _elements("Hello    there", "", "General   Kenobi"))

    async def run():
        async with _client(handler) as http:
            return await TextExtractor(http_client=http).extract("pdf", "https://files.test/a.pdf")

    assert asyncio.run(run()) == "Hello there\nGeneral Kenobi"


def test_temp_file_removed_when_extraction_fails(monkeypatch):
    seen = {}

    def handler(request):
        return httpx.Response(200, content=b"%PDF-1.5\nbody")

    def failing_reader(path, file_type):
        seen["path"] = path
        assert os.path.exists(path)
        raise ExtractionError("Failed to extract text from PDF: boom")

    monkeypatch.setattr(extraction, "extract_local_file", failing_reader)

    async def run():
        async with _client(handler) as http:
            await TextExtractor(http_client=http).extract("pdf", "https://files.test/a.pdf")

    with pytest.raises(ExtractionError, match="boom"):
        asyncio.run(run())
    assert seen["path"].endswith(".pdf")
    assert not os.path.exists(seen["path"])


def test_temp_file_removed_after_success(monkeypatch):
    seen = {}

    def handler(request):
        return httpx.Response(200, content=b"bytes")

    def reader(path, file_type):
        seen["path"] = path
        return "ok"

    monkeypatch.setattr(extraction, "extract_local_file", reader)

    async def run():
        async with _client(handler) as http:
            return await TextExtractor(http_client=http).extract("png", "https://files.test/a.png")

    assert asyncio.run(run()) == "ok"
    assert not os.path.exists(seen["path"])


def test_download_failure_becomes_extraction_error():
    def handler(request):
        return httpx.Response(404, content=b"missing")

    async def run():
        async with _client(handler) as http:
            await TextExtractor(http_client=http).extract("pdf", "https://files.test/gone.pdf")

    with pytest.raises(ExtractionError, match="Failed to download"):
        asyncio.run(run())
