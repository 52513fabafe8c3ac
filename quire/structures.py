"""Core data structures for the Quire pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional


MAX_UNIT_SIZE = 8 * 1024 * 1024


class DocumentFormat(Enum):
    """Container formats understood by the segmenter and reconstructor."""

    PLAIN_TEXT = "txt"
    WORD = "docx"
    EBOOK = "epub"
    PDF = "pdf"


@dataclass
class Segment:
    """A bounded unit of text ready for translation.

    ``identifier`` maps the segment back to its origin (``segment_<n>`` for
    text streams, the archive member path for e-book chapters, optionally
    suffixed ``_part<n>``). ``original_markup`` carries the untouched chapter
    markup for e-book segments and is ``None`` everywhere else.
    """

    text: str
    identifier: str
    index: int
    original_size: int
    original_markup: Optional[bytes] = None


@dataclass
class Chunk:
    """A request-sized slice of one segment's translation for refinement."""

    index: int
    source_text: str
    machine_translated_text: str
    refined_text: str
    completed: bool = False
    error: Optional[str] = None


@dataclass
class ProgressEvent:
    """Progress notification emitted while a document is processed."""

    stage: str
    current: int
    total: int
    message: str = ""


ProgressCallback = Callable[[int, int], None]
