"""Chunking utilities for preparing extracted document text for embedding."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List

_WORD_RE = re.compile(r"\S+")
_SENTENCE_SPLIT_RE = re.compile(r'(?<=[.!?])\s+(?=[A-Z0-9"\'\(])')

MAX_TOKENS = 1000
DEFAULT_OVERLAP_TOKENS = 200


@dataclass(slots=True)
class TextBlock:
    """A run of text bounded by a page or paragraph break in the source."""

    text: str
    page: int | None = None


@dataclass(slots=True)
class Chunk:
    index: int
    text: str
    page: int | None
    summary: str | None
    token_count: int
    char_count: int


def count_tokens(text: str) -> int:
    return len(_WORD_RE.findall(text))


def _normalize_block(text: str) -> str:
    cleaned = text.replace("\r\n", "\n").replace("\r", "\n").replace("\x00", "")
    cleaned = re.sub(r"[ \t\f\v]+", " ", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def _split_sentences(paragraph: str) -> List[str]:
    paragraph = paragraph.strip()
    if not paragraph:
        return []
    return [sentence.strip() for sentence in _SENTENCE_SPLIT_RE.split(paragraph) if sentence.strip()]


def _summarize_text(text: str, *, max_length: int = 200) -> str | None:
    sentences = _split_sentences(text)
    if not sentences:
        return None
    summary = sentences[0]
    if len(summary) > max_length:
        summary = summary[: max_length - 1].rstrip() + "…"
    return summary


def _split_paragraphs(text: str) -> List[str]:
    paragraphs: List[str] = []
    buffer: List[str] = []
    for line in text.split("\n"):
        if not line.strip():
            if buffer:
                paragraphs.append(" ".join(buffer))
                buffer = []
            continue
        buffer.append(line.strip())
    if buffer:
        paragraphs.append(" ".join(buffer))
    return [paragraph for paragraph in paragraphs if paragraph]


def _split_large_paragraph(paragraph: str, max_tokens: int) -> List[str]:
    if count_tokens(paragraph) <= max_tokens:
        return [paragraph]

    pieces: List[str] = []
    current: List[str] = []
    token_count = 0
    for sentence in _split_sentences(paragraph) or [paragraph]:
        tokens = count_tokens(sentence)
        if tokens > max_tokens:
            if current:
                pieces.append(" ".join(current))
                current, token_count = [], 0
            words = sentence.split()
            pieces.extend(" ".join(words[i : i + max_tokens]) for i in range(0, len(words), max_tokens))
            continue
        if token_count + tokens > max_tokens and current:
            pieces.append(" ".join(current))
            current, token_count = [], 0
        current.append(sentence)
        token_count += tokens
    if current:
        pieces.append(" ".join(current))
    return pieces


def _overlap_tail(text: str, overlap_tokens: int) -> str:
    words = text.split()
    if overlap_tokens <= 0 or len(words) < 2:
        return ""
    overlap = min(overlap_tokens, len(words) // 2)
    if overlap <= 0:
        return ""
    return " ".join(words[-overlap:])


def _pack_block(block: TextBlock, *, max_tokens: int, overlap_tokens: int) -> List[tuple[str, int | None]]:
    packed: List[tuple[str, int | None]] = []
    current: List[str] = []
    current_tokens = 0

    def flush() -> None:
        nonlocal current, current_tokens
        text = "\n\n".join(current).strip()
        if text:
            packed.append((text, block.page))
        carry = _overlap_tail(text, overlap_tokens)
        current = [carry] if carry else []
        current_tokens = count_tokens(carry)

    for paragraph in _split_paragraphs(_normalize_block(block.text)):
        for piece in _split_large_paragraph(paragraph, max_tokens):
            piece_tokens = count_tokens(piece)
            if current and current_tokens + piece_tokens > max_tokens:
                flush()
                if current_tokens + piece_tokens > max_tokens:
                    current, current_tokens = [], 0
            current.append(piece)
            current_tokens += piece_tokens

    text = "\n\n".join(current).strip()
    if text and (not packed or count_tokens(text) > count_tokens(_overlap_tail(packed[-1][0], overlap_tokens))):
        packed.append((text, block.page))
    return packed


def chunk_blocks(
    blocks: Iterable[TextBlock],
    *,
    max_tokens: int = MAX_TOKENS,
    overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
) -> List[Chunk]:
    """Pack paragraphs into chunks of at most ``max_tokens`` words.

    Chunks never span two blocks, so a page break in the source always starts
    a new chunk. Consecutive chunks of the same block repeat up to
    ``overlap_tokens`` trailing words for continuity (never more than half of
    the previous chunk). Blocks with no text produce nothing, so an empty
    document yields an empty list.
    """

    if max_tokens <= 0:
        raise ValueError("max_tokens must be a positive integer")
    overlap_tokens = max(0, min(overlap_tokens, max_tokens // 2))

    chunks: List[Chunk] = []
    for block in blocks:
        for text, page in _pack_block(block, max_tokens=max_tokens, overlap_tokens=overlap_tokens):
            chunks.append(
                Chunk(
                    index=len(chunks),
                    text=text,
                    page=page,
                    summary=_summarize_text(text),
                    token_count=count_tokens(text),
                    char_count=len(text),
                )
            )
    return chunks


def chunk_text(
    text: str,
    *,
    max_tokens: int = MAX_TOKENS,
    overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
) -> List[Chunk]:
    return chunk_blocks([TextBlock(text=text)], max_tokens=max_tokens, overlap_tokens=overlap_tokens)


__all__ = ["Chunk", "TextBlock", "chunk_blocks", "chunk_text", "count_tokens"]
