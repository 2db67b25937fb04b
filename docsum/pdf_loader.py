from pathlib import Path
from typing import List

import fitz  # PyMuPDF

TEXT_SUFFIXES = {".txt", ".md"}
SUPPORTED_SUFFIXES = {".pdf"} | TEXT_SUFFIXES


class DocumentLoadError(RuntimeError):
    """The source document could not be read; aborts that document's run only."""


def load_pdf(path: str) -> List[str]:
    """Extract text per page from a PDF using PyMuPDF (fitz).

    Raises:
        DocumentLoadError: if the file is missing or not a readable PDF.
    """
    try:
        doc = fitz.open(path)
    except Exception as e:
        raise DocumentLoadError(f"cannot open PDF {path}: {e}") from e
    pages = []
    try:
        for page in doc:
            text = page.get_text("text")
            if text:
                pages.append(text)
    finally:
        doc.close()
    return pages


def load_text(path: str) -> str:
    """Plain text of a supported document, pages separated by blank lines."""
    p = Path(path)
    suffix = p.suffix.lower()
    if suffix == ".pdf":
        pages = load_pdf(path)
        text = "\n\n".join(page.strip() for page in pages)
    elif suffix in TEXT_SUFFIXES:
        try:
            text = p.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise DocumentLoadError(f"cannot read {path}: {e}") from e
    else:
        raise DocumentLoadError(f"unsupported document type: {p.name}")
    if not text.strip():
        raise DocumentLoadError(f"{p.name} contains no extractable text")
    return text
