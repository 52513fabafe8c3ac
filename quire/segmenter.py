"""Document segmentation into size-bounded translation units."""

from __future__ import annotations

import logging
import pathlib
import zipfile
from typing import BinaryIO, List, Optional, Sequence, Union

from docx import Document as open_word_document
from docx.opc.exceptions import PackageNotFoundError
from lxml import etree

from .converter import converted_docx
from .errors import NoContentError, OpenError, ParseError
from .formats import detect_format
from .markup import loose_text, parse_markup, text_blocks, text_paragraphs
from .structures import MAX_UNIT_SIZE, DocumentFormat, ProgressCallback, Segment

logger = logging.getLogger(__name__)

CHAPTER_SUFFIXES = (".xhtml", ".html")
PDF_IDENTIFIER_PREFIX = "pdf_converted_"

WordSource = Union[pathlib.Path, str, BinaryIO]


def utf8_size(text: str) -> int:
    return len(text.encode("utf-8"))


def bound_paragraphs(text: str, max_size: int = MAX_UNIT_SIZE) -> List[str]:
    """Greedily pack newline-delimited paragraphs into pieces of ``max_size`` bytes.

    Joining the pieces with ``"\\n"`` gives back ``text`` exactly. A single
    paragraph larger than ``max_size`` becomes its own oversized piece.
    """

    if not text:
        return []

    pieces: List[str] = []
    buffer: List[str] = []
    size = 0
    for paragraph in text.split("\n"):
        paragraph_size = utf8_size(paragraph)
        if buffer and size + 1 + paragraph_size > max_size:
            pieces.append("\n".join(buffer))
            buffer = [paragraph]
            size = paragraph_size
            continue
        size = size + 1 + paragraph_size if buffer else paragraph_size
        buffer.append(paragraph)

    if buffer:
        pieces.append("\n".join(buffer))
    return pieces


def split_text_by_paragraphs(
    text: str,
    max_size: int = MAX_UNIT_SIZE,
) -> List[Segment]:
    """Segment a text stream into ``segment_<n>`` units."""

    segments: List[Segment] = []
    for index, piece in enumerate(bound_paragraphs(text, max_size)):
        segments.append(
            Segment(
                text=piece,
                identifier=f"segment_{index}",
                index=index,
                original_size=utf8_size(piece),
            )
        )
    return segments


def load_word_document(source: WordSource):
    """Open a Word container with python-docx, mapping failures to ParseError."""

    try:
        return open_word_document(source)
    except PackageNotFoundError as exc:
        raise ParseError(f"Invalid DOCX: {exc}") from exc
    except OSError as exc:
        raise OpenError(f"Could not open DOCX: {exc}") from exc
    except (KeyError, ValueError, zipfile.BadZipFile, etree.XMLSyntaxError) as exc:
        raise ParseError(
            f"Invalid DOCX: main document part could not be read ({exc})."
        ) from exc


def extract_word_text(source: WordSource) -> str:
    """Return one line per text-bearing paragraph of the document body part."""

    document = load_word_document(source)
    lines = [text for _, _, text in text_paragraphs(document.element)]
    return "".join(f"{line}\n" for line in lines)


def chapter_text(content: bytes, name: str = "chapter") -> str:
    """Return one line per text-bearing block of a chapter."""

    markup = parse_markup(content)
    stray = loose_text(markup)
    if stray:
        logger.warning(
            "%s has text outside paragraphs and headings that will not be "
            "translated: %.60r",
            name,
            stray,
        )
    return "\n".join(text for _, text in text_blocks(markup))


def is_chapter_member(name: str) -> bool:
    return name.lower().endswith(CHAPTER_SUFFIXES)


def list_chapters(path: pathlib.Path) -> List[str]:
    """Return chapter member names in archive order."""

    try:
        with zipfile.ZipFile(path) as archive:
            return [
                info.filename
                for info in archive.infolist()
                if not info.is_dir() and is_chapter_member(info.filename)
            ]
    except zipfile.BadZipFile as exc:
        raise ParseError(f"Error opening EPUB: {exc}") from exc
    except OSError as exc:
        raise OpenError(f"Could not open EPUB: {exc}") from exc


class Segmenter:
    """Turns documents into ordered, size-bounded segments."""

    def __init__(
        self,
        max_size: int = MAX_UNIT_SIZE,
        *,
        converter: Optional[str] = None,
    ) -> None:
        self.max_size = max(1, max_size)
        self.converter = converter

    def segment(
        self,
        path: pathlib.Path,
        progress: Optional[ProgressCallback] = None,
    ) -> List[Segment]:
        path = pathlib.Path(path)
        document_format = detect_format(path)
        _check_readable(path)

        if document_format is DocumentFormat.PLAIN_TEXT:
            segments = self.segment_plain_text(path)
        elif document_format is DocumentFormat.WORD:
            segments = self.segment_word(path)
        elif document_format is DocumentFormat.EBOOK:
            segments = self.segment_ebook(path, progress)
        else:
            segments = self.segment_pdf(path)

        if not segments:
            raise NoContentError(f"No text found in document: {path.name}")

        if document_format is not DocumentFormat.EBOOK and progress is not None:
            progress(len(segments), len(segments))
        logger.info("Segmented %s into %d segment(s)", path.name, len(segments))
        return segments

    def segment_plain_text(self, path: pathlib.Path) -> List[Segment]:
        try:
            text = path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise ParseError(f"Text file is not valid UTF-8: {path}") from exc
        except OSError as exc:
            raise OpenError(f"Could not open text file: {path}") from exc
        if not text.strip():
            return []
        return split_text_by_paragraphs(text, self.max_size)

    def segment_word(self, source: WordSource) -> List[Segment]:
        text = extract_word_text(source)
        logger.debug("Extracted %d characters from DOCX", len(text))
        return split_text_by_paragraphs(text, self.max_size)

    def segment_ebook(
        self,
        path: pathlib.Path,
        progress: Optional[ProgressCallback] = None,
    ) -> List[Segment]:
        chapters = list_chapters(path)
        if not chapters:
            raise NoContentError(f"No chapters found in EPUB file: {path.name}")
        if progress is not None:
            progress(0, len(chapters))

        segments: List[Segment] = []
        try:
            archive = zipfile.ZipFile(path)
        except zipfile.BadZipFile as exc:
            raise ParseError(f"Error reading EPUB: {exc}") from exc
        except OSError as exc:
            raise OpenError(f"Could not open EPUB: {exc}") from exc
        with archive:
            for position, name in enumerate(chapters, start=1):
                try:
                    content = archive.read(name)
                except (zipfile.BadZipFile, OSError) as exc:
                    logger.warning("Skipping unreadable chapter %s: %s", name, exc)
                    continue
                try:
                    text = chapter_text(content, name)
                except ParseError as exc:
                    logger.warning("Skipping unparsable chapter %s: %s", name, exc)
                    continue
                if text:
                    segments.extend(
                        self._chapter_segments(name, text, content, len(segments))
                    )
                if progress is not None:
                    progress(position, len(chapters))
        return segments

    def _chapter_segments(
        self,
        name: str,
        text: str,
        content: bytes,
        next_index: int,
    ) -> List[Segment]:
        size = utf8_size(text)
        if size <= self.max_size:
            return [
                Segment(
                    text=text,
                    identifier=name,
                    index=next_index,
                    original_size=size,
                    original_markup=content,
                )
            ]

        logger.debug("Chapter %s too large (%d bytes), splitting", name, size)
        parts = []
        for part, piece in enumerate(bound_paragraphs(text, self.max_size)):
            parts.append(
                Segment(
                    text=piece,
                    identifier=f"{name}_part{part}",
                    index=next_index + part,
                    original_size=utf8_size(piece),
                    # Only the first part keeps the markup needed for rebuilding.
                    original_markup=content if part == 0 else None,
                )
            )
        return parts

    def segment_pdf(self, path: pathlib.Path) -> List[Segment]:
        with converted_docx(path, converter=self.converter) as docx_path:
            segments = self.segment_word(docx_path)
        for segment in segments:
            segment.identifier = f"{PDF_IDENTIFIER_PREFIX}{segment.identifier}"
        return segments


def _check_readable(path: pathlib.Path) -> None:
    if not path.exists():
        raise OpenError(f"Input file not found: {path}")
    if not path.is_file():
        raise OpenError(f"Input path is not a file: {path}")


def segment_document(
    path: pathlib.Path,
    *,
    progress: Optional[ProgressCallback] = None,
    converter: Optional[str] = None,
    max_size: int = MAX_UNIT_SIZE,
) -> List[Segment]:
    """Segment ``path`` into ordered units bounded by ``max_size`` bytes."""

    return Segmenter(max_size, converter=converter).segment(path, progress)


def file_size(path: pathlib.Path) -> int:
    return pathlib.Path(path).stat().st_size


def needs_splitting(path: pathlib.Path) -> bool:
    """Return whether the file is larger than a single unit may be."""

    return file_size(path) > MAX_UNIT_SIZE


def extract_text(path: pathlib.Path, *, converter: Optional[str] = None) -> str:
    """Return the document's translatable text as one newline-joined string."""

    segments = segment_document(path, converter=converter)
    return join_segments(segments).strip()


def join_segments(segments: Sequence[Segment]) -> str:
    ordered = sorted(segments, key=lambda segment: segment.index)
    return "\n".join(segment.text for segment in ordered)
