"""Immutable context buffer and metadata-only chunk planner.

The :class:`ContextBuffer` holds the large input text of one engine.  It
never changes after construction and is read through bounds-checked slicing
(:meth:`ContextBuffer.read`) or index planning (:meth:`ContextBuffer.plan_chunks`).

Nested engines receive a *view* of their parent's buffer: the view keeps a
reference to the same underlying ``str`` plus an offset, so a chunk handed to
a sub-call is shared by reference rather than copied.
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any, overload

from .errors import InvalidParameterError, RangeError


@dataclass(frozen=True)
class ChunkDescriptor:
    """Index metadata describing a context sub-range ``[start, end)``."""

    id: int
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start

    def to_dict(self) -> dict[str, int]:
        return {"id": self.id, "start": self.start, "end": self.end}


def plan_chunks(length: int, chunk_size: int, overlap: int = 0) -> list[ChunkDescriptor]:
    """Plan chunk descriptors over a text of ``length`` characters.

    Parameters
    ----------
    length : int
        Length of the text being chunked.
    chunk_size : int
        Maximum characters per chunk.
    overlap : int
        Characters shared by consecutive chunks.

    Returns
    -------
    list[ChunkDescriptor]
        Descriptors ordered by ``id``; empty when ``length == 0``.

    Raises
    ------
    InvalidParameterError
        If ``chunk_size <= 0``, ``overlap < 0`` or ``overlap >= chunk_size``.
    """
    if chunk_size <= 0:
        raise InvalidParameterError(f"chunk_size must be positive, got {chunk_size}")
    if overlap < 0:
        raise InvalidParameterError(f"overlap must be non-negative, got {overlap}")
    if overlap >= chunk_size:
        raise InvalidParameterError(
            f"overlap ({overlap}) must be smaller than chunk_size ({chunk_size})"
        )

    chunks: list[ChunkDescriptor] = []
    start = 0
    while start < length:
        end = min(start + chunk_size, length)
        chunks.append(ChunkDescriptor(id=len(chunks), start=start, end=end))
        if end == length:
            break
        start = end - overlap
    return chunks


class ContextBuffer:
    """Read-only view of the context text.

    Parameters
    ----------
    text : str
        The full underlying text.
    offset : int
        Start of this view inside ``text``.
    length : int | None
        Length of this view (defaults to the rest of ``text``).
    """

    def __init__(self, text: str, offset: int = 0, length: int | None = None) -> None:
        if not isinstance(text, str):
            raise TypeError(f"context must be str, got {type(text).__name__}")
        if length is None:
            length = len(text) - offset
        if offset < 0 or length < 0 or offset + length > len(text):
            raise RangeError(offset, offset + length, len(text))
        self._text = text
        self._offset = offset
        self._length = length

    @classmethod
    def from_path(cls, path: str | Path, encoding: str = "utf-8") -> ContextBuffer:
        """Load a buffer from a text file."""
        return cls(Path(path).read_text(encoding=encoding, errors="replace"))

    # ------------------------------------------------------------------
    # Bounded access
    # ------------------------------------------------------------------

    def _check_range(self, start: int, end: int) -> None:
        if start < 0 or end > self._length or start > end:
            raise RangeError(start, end, self._length)

    def read(self, start: int, end: int) -> str:
        """Return the substring ``[start, end)``.

        Raises
        ------
        RangeError
            If ``start < 0``, ``end > len(self)`` or ``start > end``.
        """
        self._check_range(start, end)
        return self._text[self._offset + start : self._offset + end]

    def view(self, start: int, end: int) -> ContextBuffer:
        """Return a zero-copy buffer over ``[start, end)`` of this buffer."""
        self._check_range(start, end)
        return ContextBuffer(self._text, self._offset + start, end - start)

    def plan_chunks(self, chunk_size: int, overlap: int = 0) -> list[ChunkDescriptor]:
        """Plan chunk descriptors over this buffer (see :func:`plan_chunks`)."""
        return plan_chunks(self._length, chunk_size, overlap)

    def search(
        self, pattern: str, flags: int = 0, limit: int | None = None
    ) -> list[tuple[int, int]]:
        """Return ``(start, end)`` offsets of regex matches, in order.

        Parameters
        ----------
        pattern : str
            Regular expression.
        flags : int
            Regex flags (e.g. ``re.IGNORECASE``).
        limit : int | None
            Stop after this many matches.
        """
        compiled = re.compile(pattern, flags)
        spans: list[tuple[int, int]] = []
        end_pos = self._offset + self._length
        for match in compiled.finditer(self._text, self._offset, end_pos):
            spans.append((match.start() - self._offset, match.end() - self._offset))
            if limit is not None and len(spans) >= limit:
                break
        return spans

    def lines(self) -> Iterator[str]:
        """Yield lines of the buffer without the trailing newline."""
        yield from str(self).splitlines()

    # ------------------------------------------------------------------
    # Sequence-like interface
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return self._length

    @overload
    def __getitem__(self, index: int) -> str: ...
    @overload
    def __getitem__(self, index: slice) -> str: ...

    def __getitem__(self, index: int | slice) -> str:
        return str(self)[index]

    def __str__(self) -> str:
        if self._offset == 0 and self._length == len(self._text):
            return self._text
        return self._text[self._offset : self._offset + self._length]

    def __repr__(self) -> str:
        return f"ContextBuffer(offset={self._offset:,}, size={self._length:,})"

    def __contains__(self, item: Any) -> bool:
        if not isinstance(item, str):
            return False
        return self._text.find(item, self._offset, self._offset + self._length) != -1

    def shares_text_with(self, other: ContextBuffer) -> bool:
        """Return True if both buffers reference the same underlying text."""
        return self._text is other._text
