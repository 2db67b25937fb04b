import fitz
import pytest

from docsum.pdf_loader import DocumentLoadError, load_pdf, load_text


def make_pdf(path, pages):
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        page.insert_text((72, 72), text)
    doc.save(str(path))
    doc.close()


def test_loader_no_file():
    with pytest.raises(DocumentLoadError):
        load_pdf("nonexistent.pdf")


def test_pdf_pages_are_joined(tmp_path):
    path = tmp_path / "circular.pdf"
    make_pdf(path, ["First page text.", "Second page text."])
    assert len(load_pdf(str(path))) == 2
    text = load_text(str(path))
    assert "First page text." in text
    assert "\n\nSecond page text." in text


def test_text_files_are_read_as_utf8(tmp_path):
    path = tmp_path / "notes.md"
    path.write_text("# Članak 1\n\nSadržaj.", encoding="utf-8")
    assert load_text(str(path)) == "# Članak 1\n\nSadržaj."


def test_unsupported_and_empty_documents_are_rejected(tmp_path):
    docx = tmp_path / "report.docx"
    docx.write_bytes(b"PK")
    with pytest.raises(DocumentLoadError, match="unsupported"):
        load_text(str(docx))

    empty = tmp_path / "empty.txt"
    empty.write_text("  \n", encoding="utf-8")
    with pytest.raises(DocumentLoadError, match="no extractable text"):
        load_text(str(empty))
