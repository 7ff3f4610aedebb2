"""Character-based text chunking for embedding.

Splitting is by character count only (not line or sentence aware) so the same
text always produces the same chunks.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePosixPath


@dataclass(frozen=True)
class TextChunk:
    """A slice of a file's text starting at ``start``."""

    start: int
    text: str

    @property
    def end(self) -> int:
        return self.start + len(self.text)


def clamp_overlap(max_chars: int, overlap: int) -> int:
    """Clamp *overlap* into ``[0, max_chars - 1]``."""
    return max(0, min(overlap, max_chars - 1))


def chunk_text(text: str, max_chars: int, overlap: int) -> list[TextChunk]:
    """Split *text* into overlapping chunks of at most *max_chars* characters.

    Adjacent chunks share exactly *overlap* characters; only the last chunk
    may be shorter than *max_chars*.  Every character of *text* is in at
    least one chunk.
    """
    if max_chars < 1:
        raise ValueError(f"max_chars must be positive, got {max_chars}")
    if not text:
        return []

    overlap = clamp_overlap(max_chars, overlap)
    if len(text) <= max_chars:
        return [TextChunk(0, text)]

    step = max_chars - overlap
    chunks: list[TextChunk] = []
    start = 0
    while True:
        end = min(start + max_chars, len(text))
        chunks.append(TextChunk(start, text[start:end]))
        if end == len(text):
            break
        start += step
    return chunks


def build_file_header(relative_path: str) -> str:
    """Header prepended to a file's text so every chunk carries its path."""
    path = PurePosixPath(relative_path)
    return (
        f"FILE: {relative_path}\n"
        f"NAME: {path.name}\n"
        f"EXT: {path.suffix.lstrip('.').lower()}\n"
        "---\n"
    )
