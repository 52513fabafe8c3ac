"""Rebuild translated documents in their original container format."""

from __future__ import annotations

import contextlib
import html
import logging
import os
import pathlib
import tempfile
import zipfile
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from lxml import etree

from .converter import converted_docx
from .errors import ParseError, ReconstructionError
from .formats import detect_format
from .markup import (
    XML_SPACE,
    parse_markup,
    replace_block_content,
    text_blocks,
    text_paragraphs,
)
from .segmenter import WordSource, join_segments, load_word_document
from .structures import DocumentFormat, Segment

logger = logging.getLogger(__name__)

FALLBACK_CHAPTER = """<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE html>
<html xmlns="http://www.w3.org/1999/xhtml">
<body><p>{text}</p></body></html>"""


def translated_lines(segments: Sequence[Segment]) -> List[str]:
    """Split translated segments into the per-paragraph lines used for pairing."""

    return [line for line in join_segments(segments).split("\n") if line]


@contextlib.contextmanager
def staged_output(output_path: pathlib.Path) -> Iterator[pathlib.Path]:
    """Yield a temporary sibling of ``output_path`` that replaces it on success.

    On failure the temporary file is removed and any existing output is left
    as it was.
    """

    output_path = pathlib.Path(output_path)
    try:
        handle, name = tempfile.mkstemp(
            prefix=f".{output_path.name}.",
            suffix=".tmp",
            dir=output_path.parent,
        )
    except OSError as exc:
        raise ReconstructionError(
            f"Could not create output document {output_path}: {exc}"
        ) from exc
    os.close(handle)
    staging = pathlib.Path(name)
    # mkstemp creates owner-only files.
    with contextlib.suppress(OSError):
        os.chmod(staging, 0o644)
    try:
        yield staging
        os.replace(staging, output_path)
    except OSError as exc:
        _discard(staging)
        raise ReconstructionError(
            f"Could not create output document {output_path}: {exc}"
        ) from exc
    except BaseException:
        _discard(staging)
        raise


def write_archive(
    source: WordSource,
    output_path: pathlib.Path,
    replacements: Mapping[str, bytes],
) -> None:
    """Copy every member of ``source`` to ``output_path``, swapping ``replacements``.

    Untouched members keep their bytes and compression settings.
    """

    with staged_output(output_path) as staging:
        try:
            with contextlib.ExitStack() as stack:
                source_zip = stack.enter_context(zipfile.ZipFile(source))
                missing = set(replacements) - set(source_zip.namelist())
                if missing:
                    raise ReconstructionError(
                        "Original container has no member(s): "
                        + ", ".join(sorted(missing))
                    )
                out_zip = stack.enter_context(zipfile.ZipFile(staging, "w"))
                for info in source_zip.infolist():
                    data = replacements.get(info.filename)
                    if data is None:
                        data = source_zip.read(info.filename)
                    out_zip.writestr(info, data)
        except zipfile.BadZipFile as exc:
            raise ReconstructionError(
                f"Could not create output document {output_path}: {exc}"
            ) from exc


def _discard(path: pathlib.Path) -> None:
    with contextlib.suppress(OSError):
        pathlib.Path(path).unlink()


# --- Plain text -----------------------------------------------------------


def rebuild_plain_text(
    translated_segments: Sequence[Segment],
    output_path: pathlib.Path,
) -> None:
    with staged_output(output_path) as staging:
        staging.write_text(join_segments(translated_segments), encoding="utf-8")


# --- Word -----------------------------------------------------------------


def apply_word_translation(root: etree._Element, lines: Sequence[str]) -> int:
    """Pair text-bearing paragraphs with ``lines`` in order and rewrite them.

    The first text node of each paired paragraph receives the line, the
    paragraph's other text nodes are removed, and paragraph properties are
    left alone. Returns the number of rewritten paragraphs.
    """

    paragraphs = text_paragraphs(root)
    if len(paragraphs) != len(lines):
        logger.warning(
            "Paragraph count (%d) differs from translated line count (%d); "
            "pairing stays positional",
            len(paragraphs),
            len(lines),
        )

    rewritten = 0
    for (_, nodes, _), line in zip(paragraphs, lines):
        first, *rest = nodes
        first.text = line
        first.set(XML_SPACE, "preserve")
        for node in rest:
            node.getparent().remove(node)
        rewritten += 1
    return rewritten


def rebuild_word(
    source: WordSource,
    translated_segments: Sequence[Segment],
    output_path: pathlib.Path,
) -> None:
    document = load_word_document(source)
    part = document.part
    member = str(part.partname).lstrip("/")
    rewritten = apply_word_translation(
        document.element,
        translated_lines(translated_segments),
    )
    logger.debug("Rewrote %d paragraph(s) in %s", rewritten, member)
    write_archive(source, output_path, {member: part.blob})


# --- E-book ---------------------------------------------------------------


def _chapter_translation(
    name: str,
    translations: Mapping[str, Segment],
    markups: Mapping[str, bytes],
) -> Tuple[Optional[str], Optional[bytes]]:
    """Return the translated text and original markup for a chapter member."""

    def markup_for(key: str) -> Optional[bytes]:
        return markups.get(key) or translations[key].original_markup

    if name in translations:
        return translations[name].text, markup_for(name)

    first_part = f"{name}_part0"
    if first_part not in translations:
        return None, None

    parts = []
    part = 0
    while f"{name}_part{part}" in translations:
        parts.append(translations[f"{name}_part{part}"].text)
        part += 1
    # Part boundaries are paragraph boundaries, so they stay line breaks.
    return "\n".join(parts), markup_for(first_part)


def rebuild_chapter(markup: Optional[bytes], text: str) -> bytes:
    """Rewrite one chapter's blocks with the translated lines in ``text``."""

    if markup is None:
        return FALLBACK_CHAPTER.format(text=html.escape(text)).encode("utf-8")

    tree = parse_markup(markup)
    blocks = text_blocks(tree)
    lines = [line.strip() or " " for line in text.split("\n") if line]
    if len(blocks) != len(lines):
        logger.warning(
            "Block count (%d) differs from translated line count (%d); "
            "pairing stays positional",
            len(blocks),
            len(lines),
        )
    for (element, _), line in zip(blocks, lines):
        replace_block_content(element, line)
    return tree.serialize()


def rebuild_ebook(
    original_path: pathlib.Path,
    original_segments: Sequence[Segment],
    translated_segments: Sequence[Segment],
    output_path: pathlib.Path,
) -> None:
    translations: Dict[str, Segment] = {
        segment.identifier: segment for segment in translated_segments
    }
    markups: Dict[str, bytes] = {
        segment.identifier: segment.original_markup
        for segment in original_segments
        if segment.original_markup is not None
    }

    try:
        with zipfile.ZipFile(original_path) as archive:
            names = archive.namelist()
    except (OSError, zipfile.BadZipFile) as exc:
        raise ReconstructionError(f"Could not open original EPUB: {exc}") from exc

    replacements: Dict[str, bytes] = {}
    for name in names:
        text, markup = _chapter_translation(name, translations, markups)
        if text is None:
            continue
        try:
            replacements[name] = rebuild_chapter(markup, text)
        except ParseError as exc:
            raise ReconstructionError(f"Could not rebuild chapter {name}: {exc}") from exc
    logger.debug("Rebuilding %d chapter(s)", len(replacements))
    write_archive(original_path, output_path, replacements)


# --- Dispatch -------------------------------------------------------------


def reconstruct_document(
    original_path: pathlib.Path,
    original_segments: Sequence[Segment],
    translated_segments: Sequence[Segment],
    output_path: pathlib.Path,
    *,
    converter: Optional[str] = None,
) -> pathlib.Path:
    """Write the translated document to ``output_path`` and return it."""

    original_path = pathlib.Path(original_path)
    output_path = pathlib.Path(output_path)
    document_format = detect_format(original_path)

    if document_format is DocumentFormat.PLAIN_TEXT:
        rebuild_plain_text(translated_segments, output_path)
    elif document_format is DocumentFormat.WORD:
        rebuild_word(original_path, translated_segments, output_path)
    elif document_format is DocumentFormat.EBOOK:
        rebuild_ebook(
            original_path,
            original_segments,
            translated_segments,
            output_path,
        )
    else:
        if output_path.suffix.lower() != ".docx":
            logger.warning(
                "Saving PDF translation as DOCX (PDF export not supported); "
                "%s does not end in .docx",
                output_path.name,
            )
        with converted_docx(original_path, converter=converter) as docx_path:
            rebuild_word(docx_path, translated_segments, output_path)

    logger.info("Saved translated document to %s", output_path)
    return output_path
