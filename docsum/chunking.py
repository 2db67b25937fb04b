import logging
import math
import re
from typing import List, Optional, Tuple

from langchain_text_splitters import RecursiveCharacterTextSplitter

from .models import Chunk

logger = logging.getLogger(__name__)

JOINER = "\n\n"
LETTERHEAD_MAX_CHARS = 60

HEADING_SPLIT_RE = re.compile(r"(?=^#{1,6}\s+)", re.MULTILINE)
HEADING_RE = re.compile(r"^#{1,6}\s+\S")
TITLE_RE = re.compile(
    r"^(?:(?:section|article|chapter|part)\s+[\dIVXLC]+\b|\d+(?:\.\d+)*[.)]?\s+\S|[IVXLC]+\.\s+\S)",
    re.IGNORECASE,
)
PARAGRAPH_SPLIT_RE = re.compile(r"\r?\n\s*\r?\n+")
SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?:])\s+")

# Layout artifacts left behind by PDF extraction.
_TOC_RE = re.compile(r"Table of Contents[\s\S]+?(Section|Article|1\.|I\.)", re.IGNORECASE)
_ARTIFACT_LINE_RES = [
    re.compile(r"^Page \d+.*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^(Confidential|Draft|Sample|—+)[ \t]*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^\d+[ \t]*$", re.MULTILINE),
    re.compile(r"^\d+\s+of\s+\d+[ \t]*$", re.MULTILINE),
]
_ARTIFACT_PHRASE_RES = [
    re.compile(r"This page intentionally left blank", re.IGNORECASE),
    re.compile(r"Do not distribute", re.IGNORECASE),
]


def clean_text(text: str) -> Tuple[str, List[str]]:
    """Strip page furniture (page numbers, banners, TOC) from extracted text.

    Returns the cleaned text and a log of what was removed.
    """
    removed: List[str] = []

    def _drop(match: "re.Match[str]") -> str:
        removed.append(f"Removed: {match.group(0).strip()}")
        return ""

    cleaned = text.replace("\r\n", "\n")
    cleaned = _TOC_RE.sub(r"\1", cleaned)
    for pattern in _ARTIFACT_LINE_RES + _ARTIFACT_PHRASE_RES:
        cleaned = pattern.sub(_drop, cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip(), removed


def drop_letterhead(text: str, max_chars: int = LETTERHEAD_MAX_CHARS) -> str:
    """Drop an unusually short leading paragraph (letterhead, sender line).

    Markdown headings and numbered or keyword titles ("ARTICLE 1 Scope",
    "2.1 Definitions") are content and stay.
    """
    paragraphs = split_paragraphs(text)
    if len(paragraphs) > 1 and len(paragraphs[0]) < max_chars and not is_title(paragraphs[0]):
        logger.debug("Dropping leading paragraph as letterhead: %r", paragraphs[0])
        return JOINER.join(paragraphs[1:])
    return text


def is_heading(line: str) -> bool:
    return bool(HEADING_RE.match(line.strip()))


def is_title(line: str) -> bool:
    return is_heading(line) or bool(TITLE_RE.match(line.strip()))


def split_paragraphs(text: str) -> List[str]:
    return [p.strip() for p in PARAGRAPH_SPLIT_RE.split(text) if p.strip()]


def split_sections(text: str) -> List[str]:
    """Semantic units: heading-delimited sections if any, else paragraphs."""
    parts = [p.strip() for p in HEADING_SPLIT_RE.split(text) if p.strip()]
    if len(parts) > 1:
        return parts
    return split_paragraphs(text)


def trailing_sentences(text: str, count: int, max_chars: Optional[int] = None) -> str:
    """Last ``count`` sentences of ``text``, fewer if they exceed ``max_chars``."""
    if count <= 0:
        return ""
    sentences = [s for s in SENTENCE_SPLIT_RE.split(text.strip()) if s]
    tail = sentences[-count:]
    while tail and max_chars is not None and len(" ".join(tail)) > max_chars:
        tail = tail[1:]
    return " ".join(tail)


def target_chunk_count(length: int, min_size: int, max_size: int, max_chunks: Optional[int] = None) -> int:
    by_max = math.ceil(length / max_size)
    by_min = math.ceil(length / min_size)
    target = max(1, round(math.sqrt(by_max * by_min)))
    if max_chunks:
        target = min(target, max_chunks)
    return target


def effective_chunk_size(length: int, target: int, min_size: int, max_size: int,
                         multiplier: float = 1.0) -> int:
    size = min(max(math.ceil(length / target), min_size), max_size)
    # Shrinking for a slow service never goes below the minimum size.
    return max(min_size, int(size * multiplier))


def slice_uniform(text: str, size: int) -> List[str]:
    """Sentence-bounded slices of roughly ``size`` characters."""
    splitter = RecursiveCharacterTextSplitter(
        chunk_size=size,
        chunk_overlap=0,
        length_function=len,
        separators=["\n\n", "\n", ". ", "? ", "! ", " ", ""],
        keep_separator="end",
    )
    return [s.strip() for s in splitter.split_text(text) if s.strip()]


def merge_trailing(slices: List[str], target: int) -> List[str]:
    # The merged tail is not re-checked against the maximum size.
    merged = list(slices)
    while len(merged) > max(target, 1):
        last = merged.pop()
        merged[-1] = f"{merged[-1]} {last}"
    return merged


def accumulate_units(units: List[str], size: int, max_size: int, overlap_sentences: int) -> List[Chunk]:
    """Greedily pack units into chunks of at most ``size`` characters.

    Each new chunk starts with the trailing sentences of the one before it.
    A unit that is larger than ``size`` on its own becomes its own chunk.
    """
    chunks: List[Chunk] = []
    buffer = ""
    seed = ""
    for unit in units:
        candidate = f"{buffer}{JOINER}{unit}" if buffer else unit
        if len(candidate) <= size or not buffer:
            buffer = candidate
            continue
        chunks.append(Chunk(index=len(chunks), text=buffer, overlap=seed))
        seed = trailing_sentences(buffer, overlap_sentences, max_chars=size // 4)
        seeded = f"{seed}{JOINER}{unit}" if seed else unit
        if len(seeded) > max_size:
            seed = ""
            seeded = unit
        buffer = seeded
    if buffer:
        chunks.append(Chunk(index=len(chunks), text=buffer, overlap=seed))
    return chunks


def fold_small_chunks(chunks: List[Chunk], min_size: int, max_size: int) -> List[Chunk]:
    """Fold chunks shorter than ``min_size`` into a neighbour.

    The smaller neighbour that can take it is used. A fold only happens
    when the combined text stays within ``max_size``; the overlap seed of
    the later chunk is dropped since the earlier one already holds it.
    """
    folded = list(chunks)
    i = 0
    while i < len(folded) and len(folded) > 1:
        cur = folded[i]
        if len(cur.text) >= min_size:
            i += 1
            continue
        into_prev = into_next = None
        if i > 0:
            prev = folded[i - 1]
            into_prev = Chunk(prev.index, f"{prev.text}{JOINER}{cur.primary}", prev.overlap)
        if i + 1 < len(folded):
            into_next = Chunk(cur.index, f"{cur.text}{JOINER}{folded[i + 1].primary}", cur.overlap)
        options = [c for c in (into_prev, into_next) if c is not None and len(c.text) <= max_size]
        if options:
            best = min(options, key=lambda c: len(c.text))
            if best is into_prev:
                folded[i - 1] = best
                del folded[i]
            else:
                folded[i] = best
                del folded[i + 1]
            continue
        logger.debug("Chunk of %d chars stays below min_size %d", len(cur.text), min_size)
        i += 1
    return [Chunk(index=n, text=c.text, overlap=c.overlap) for n, c in enumerate(folded)]


def chunk_document(
    text: str,
    *,
    base_size: int = 6000,
    min_size: int = 2000,
    max_size: int = 8000,
    overlap_sentences: int = 2,
    max_chunks: Optional[int] = None,
    multiplier: float = 1.0,
) -> List[Chunk]:
    text = text.strip()
    if not text:
        raise ValueError("cannot chunk empty text")
    if min_size > max_size:
        raise ValueError(f"min_size {min_size} exceeds max_size {max_size}")

    length = len(text)
    if length <= min(base_size, max_size):
        return [Chunk(index=0, text=text)]

    target = target_chunk_count(length, min_size, max_size, max_chunks)
    size = effective_chunk_size(length, target, min_size, max_size, multiplier)
    # A shrunken size may need more chunks than the balanced target, up to the cap.
    limit = max(target, math.ceil(length / size))
    if max_chunks:
        limit = min(limit, max_chunks)
    logger.debug("Chunking %d chars: limit=%d size=%d multiplier=%.2f", length, limit, size, multiplier)

    chunks = accumulate_units(split_sections(text), size, max_size, overlap_sentences)
    if len(chunks) > limit:
        logger.info("Section chunking produced %d chunks (> %d), slicing uniformly", len(chunks), limit)
        slices = merge_trailing(slice_uniform(text, size), limit)
        chunks = [Chunk(index=i, text=s) for i, s in enumerate(slices)]
    chunks = fold_small_chunks(chunks, min_size, max_size)

    logger.info("Created %d chunks with chunk size %d", len(chunks), size)
    return chunks


def chunk_text(pages: List[str], chunk_size: int = 6000, **kwargs) -> List[str]:
    """Plain-string view of :func:`chunk_document` over extracted pages."""
    joined = "\n".join(pages)
    return [c.text for c in chunk_document(joined, base_size=chunk_size, **kwargs)]
