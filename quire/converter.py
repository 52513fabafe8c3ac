"""External PDF to Word conversion through a LibreOffice executable."""

from __future__ import annotations

import contextlib
import logging
import pathlib
import shutil
import subprocess
import sys
import tempfile
from typing import Iterator, List, Optional

from .errors import ConversionFailedError, ConverterNotFoundError

logger = logging.getLogger(__name__)

CONVERTER_RUN_TIMEOUT = 300

_WINDOWS_PATHS = (
    r"C:\Program Files\LibreOffice\program\soffice.exe",
    r"C:\Program Files (x86)\LibreOffice\program\soffice.exe",
)
_MACOS_PATHS = ("/Applications/LibreOffice.app/Contents/MacOS/soffice",)


def _candidate_paths(explicit: Optional[str] = None) -> List[str]:
    """Return converter locations in priority order for this platform."""

    candidates: List[str] = []
    if explicit:
        candidates.append(explicit)
    if sys.platform.startswith("win"):
        candidates.extend(_WINDOWS_PATHS)
        names = ("soffice", "soffice.exe")
    elif sys.platform == "darwin":
        candidates.extend(_MACOS_PATHS)
        names = ("soffice",)
    else:
        names = ("soffice", "libreoffice")
    for name in names:
        found = shutil.which(name)
        if found:
            candidates.append(found)
    return candidates


def find_converter(explicit: Optional[str] = None) -> Optional[pathlib.Path]:
    """Locate the converter executable, or return ``None`` when absent."""

    for candidate in _candidate_paths(explicit):
        path = pathlib.Path(candidate)
        if path.is_file():
            return path
    return None


def is_converter_available(explicit: Optional[str] = None) -> bool:
    return find_converter(explicit) is not None


def convert_pdf_to_docx(
    pdf_path: pathlib.Path,
    output_dir: pathlib.Path,
    *,
    converter: Optional[str] = None,
) -> pathlib.Path:
    """Convert ``pdf_path`` into a Word document inside ``output_dir``."""

    executable = find_converter(converter)
    if executable is None:
        raise ConverterNotFoundError(
            "LibreOffice not found. Please install LibreOffice to convert PDF files. "
            "Download from: https://www.libreoffice.org/download/"
        )

    args = [
        str(executable),
        "--headless",
        "--convert-to",
        "docx",
        "--outdir",
        str(output_dir),
        str(pdf_path),
    ]
    logger.info("Converting %s with %s", pdf_path.name, executable)
    try:
        completed = subprocess.run(
            args,
            capture_output=True,
            timeout=CONVERTER_RUN_TIMEOUT,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        raise ConversionFailedError(
            "LibreOffice PDF conversion timed out.",
            diagnostics=_decode(exc.stderr),
        ) from exc
    except OSError as exc:
        raise ConversionFailedError(
            f"Failed to start LibreOffice for PDF conversion ({exc})."
        ) from exc

    diagnostics = _decode(completed.stderr)
    if completed.returncode != 0:
        raise ConversionFailedError(
            f"LibreOffice conversion failed with exit code {completed.returncode}.",
            diagnostics=diagnostics,
        )

    output_path = output_dir / f"{pdf_path.stem}.docx"
    if not output_path.is_file():
        raise ConversionFailedError(
            "PDF conversion produced no output file.",
            diagnostics=diagnostics,
        )
    return output_path


@contextlib.contextmanager
def converted_docx(
    pdf_path: pathlib.Path,
    *,
    converter: Optional[str] = None,
) -> Iterator[pathlib.Path]:
    """Yield a temporary Word conversion of ``pdf_path``.

    The temporary directory and everything in it are removed on every exit
    path, including a failed conversion.
    """

    with tempfile.TemporaryDirectory(prefix="quire-pdf-") as workdir:
        yield convert_pdf_to_docx(
            pdf_path,
            pathlib.Path(workdir),
            converter=converter,
        )


def _decode(stream: bytes | str | None) -> str:
    if stream is None:
        return ""
    if isinstance(stream, bytes):
        return stream.decode("utf-8", errors="replace")
    return stream
