from doubt_solver.services.file_types import (
    detect_file_type,
    extension_from_url,
    is_supported_file_type,
    processing_category,
)


def test_mime_type_wins_over_filename_and_url():
    assert detect_file_type("notes.png", "application/pdf", "https://cdn.test/file.gif") == "pdf"


def test_mime_lookup_is_case_insensitive():
    assert detect_file_type(None, "Application/MSWord", None) == "doc"
    assert detect_file_type(None, "IMAGE/JPG", None) == "jpg"


def test_word_mime_variants_map_to_doc_and_docx():
    docx_mime = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
    assert detect_file_type(None, docx_mime, None) == "docx"
    for mime in ("application/vnd.ms-word", "application/word", "application/x-msword"):
        assert detect_file_type(None, mime, None) == "doc"


def test_filename_used_when_mime_is_generic():
    assert detect_file_type("Lecture.DOCX", "application/octet-stream", None) == "docx"


def test_url_used_as_last_resort():
    url = "https://bucket.s3.amazonaws.com/u1/scan.jpeg?X-Amz-Signature=abc"
    assert detect_file_type("upload", "application/octet-stream", url) == "jpeg"


def test_url_extension_from_percent_encoded_path():
    assert extension_from_url("https://files.test/raw/report%2Efinal%2Epdf") == "pdf"


def test_url_without_extension():
    assert extension_from_url("https://files.test/raw/abc123") is None
    assert extension_from_url(None) is None


def test_unsupported_everywhere_is_unknown():
    assert detect_file_type("virus.exe", "application/x-msdownload", "https://x.test/virus.exe") == "unknown"
    assert detect_file_type(None, None, None) == "unknown"


def test_is_supported_file_type():
    assert is_supported_file_type("PDF")
    assert not is_supported_file_type("txt")
    assert not is_supported_file_type(None)
    assert not is_supported_file_type("")


def test_processing_category():
    assert processing_category("pdf") == "pdf"
    assert processing_category("doc") == "document"
    assert processing_category("docx") == "document"
    assert [processing_category(t) for t in ("jpg", "jpeg", "png", "gif")] == ["image"] * 4
    assert processing_category("txt") == "unknown"
