from __future__ import annotations

import math
import re
from dataclasses import asdict, dataclass

CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class Chunk:
    index: int
    text: str
    approx_token_count: int
    start_offset: int

    @property
    def end_offset(self) -> int:
        return self.start_offset + len(self.text)

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["end_offset"] = self.end_offset
        return payload


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _validate_chunk_params(chunk_size: int, overlap: int) -> str | None:
    if chunk_size <= 0:
        return "Chunk size must be greater than zero."
    if overlap < 0:
        return "Chunk overlap must be zero or greater."
    if overlap >= chunk_size:
        return "Chunk overlap must be smaller than the chunk size."
    return None


def chunk_text(text: str, max_tokens: int = 2000, overlap_tokens: int = 100) -> list[Chunk]:
    """Split ``text`` into overlapping character windows sized by token estimate.

    Windows are ``max_tokens * 4`` characters long and consecutive windows share
    ``overlap_tokens * 4`` characters. The last window always ends at the end of
    the text, so the chunks cover ``[0, len(text))`` without gaps.
    """
    error = _validate_chunk_params(max_tokens, overlap_tokens)
    if error:
        raise ValueError(error)

    chunk_size = max_tokens * CHARS_PER_TOKEN
    overlap = overlap_tokens * CHARS_PER_TOKEN
    chunks: list[Chunk] = []
    start = 0
    index = 0
    length = len(text)

    while start < length:
        end = min(start + chunk_size, length)
        window = text[start:end]
        chunks.append(
            Chunk(
                index=index,
                text=window,
                approx_token_count=estimate_tokens(window),
                start_offset=start,
            )
        )
        if end >= length:
            break
        start = max(end - overlap, 0)
        index += 1

    return chunks


def clean_text(raw_text: str) -> str:
    """Drop page-number and copyright lines and normalize whitespace."""
    text = re.sub(r"^Page \d+[^\n]*\n?", "", raw_text, flags=re.MULTILINE)
    text = re.sub(
        r"^[^\n]*(?:©|\(c\) \d{4}|Copyright \d{4})[^\n]*\n?", "", text, flags=re.MULTILINE
    )
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()
