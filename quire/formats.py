"""File format detection."""

from __future__ import annotations

import pathlib

from .errors import UnsupportedFormatError
from .structures import DocumentFormat


_EXTENSIONS = {
    ".txt": DocumentFormat.PLAIN_TEXT,
    ".docx": DocumentFormat.WORD,
    ".epub": DocumentFormat.EBOOK,
    ".pdf": DocumentFormat.PDF,
}


def detect_format(path: pathlib.Path | str) -> DocumentFormat:
    """Map a file path to its document format using the extension only."""

    suffix = pathlib.Path(path).suffix.lower()
    try:
        return _EXTENSIONS[suffix]
    except KeyError:
        raise UnsupportedFormatError(
            f"Unsupported file format '{suffix or pathlib.Path(path).name}'. "
            "Please use .txt, .docx, .epub or .pdf."
        ) from None


def supported_extensions() -> list[str]:
    return sorted(_EXTENSIONS)
