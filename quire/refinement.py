"""Sequential AI refinement of machine-translated text.

A translated segment is cut into request-sized chunks that are sent to a
refinement backend strictly one at a time. After every chunk the queue
publishes the best-effort full text so far; chunks that have not been
refined (yet, or because their request failed) contribute their machine
translation.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional, Tuple

from .backends import RefinementBackend
from .errors import RefinementError, RefinementHalted
from .structures import Chunk

logger = logging.getLogger(__name__)

CHUNK_THRESHOLD = 3000
CONTEXT_CHARS = 300
REASONING_OPEN_TAG = "<think>"
REASONING_CLOSE_TAG = "</think>"

PROMPT_TEMPLATE = (
    "### Instructions:\n"
    "1. You are a professional translator. Compare the 'Source Text' ({source}) "
    "and the 'Machine Translation' ({target}).\n"
    "2. Produce a high-quality, natural {target} version.\n"
    "3. DO NOT use <think> tags. DO NOT provide any reasoning, notes, or explanations.\n"
    "4. Output ONLY the final {target} refined text.\n\n"
    "### Context:\n{context}\n"
    "### Source Text ({source}):\n{source_text}\n\n"
    "### Machine Translation ({target} to improve):\n{machine_text}\n\n"
    "### Final Refined Translation ({target}):"
)


def build_chunks(
    source_text: str,
    machine_translated_text: str,
    threshold: int = CHUNK_THRESHOLD,
) -> List[Chunk]:
    """Walk source and translation line by line and cut them into chunks.

    A chunk closes once its source buffer grows past ``threshold``
    characters, and at the last line pair.
    """

    source_lines = source_text.split("\n")
    translated_lines = machine_translated_text.split("\n")
    line_count = max(len(source_lines), len(translated_lines))

    chunks: List[Chunk] = []
    current_source = ""
    current_translation = ""
    for line in range(line_count):
        if line < len(source_lines):
            current_source += source_lines[line] + "\n"
        if line < len(translated_lines):
            current_translation += translated_lines[line] + "\n"

        if len(current_source) > threshold or line == line_count - 1:
            translation = current_translation.strip()
            chunks.append(
                Chunk(
                    index=len(chunks),
                    source_text=current_source.strip(),
                    machine_translated_text=translation,
                    refined_text=translation,
                )
            )
            current_source = ""
            current_translation = ""
    return chunks


def strip_reasoning(
    text: str,
    open_tag: str = REASONING_OPEN_TAG,
    close_tag: str = REASONING_CLOSE_TAG,
) -> str:
    """Remove reasoning blocks; an unterminated block runs to end of text."""

    start = text.find(open_tag)
    while start != -1:
        end = text.find(close_tag, start)
        if end == -1:
            text = text[:start]
        else:
            text = text[:start] + text[end + len(close_tag):]
        start = text.find(open_tag)
    return text


def build_prompt(
    chunks: List[Chunk],
    index: int,
    *,
    source_language: str = "English",
    target_language: str = "French",
) -> str:
    context = ""
    if index > 0:
        previous = chunks[index - 1].source_text[-CONTEXT_CHARS:]
        context = f"Context (previous): {previous}\n"
    chunk = chunks[index]
    return PROMPT_TEMPLATE.format(
        source=source_language,
        target=target_language,
        context=context,
        source_text=chunk.source_text,
        machine_text=chunk.machine_translated_text,
    )


def assemble(chunks: List[Chunk]) -> str:
    return "\n\n".join(chunk.refined_text for chunk in chunks).strip()


class RefinementQueue:
    """Dispatches refinement chunks to a backend, one request at a time."""

    MAX_CONCURRENT = 1

    def __init__(
        self,
        backend: RefinementBackend,
        *,
        source_language: str = "English",
        target_language: str = "French",
        threshold: int = CHUNK_THRESHOLD,
        on_started: Optional[Callable[[int], None]] = None,
        on_progress: Optional[Callable[[int, int], None]] = None,
        on_partial: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.backend = backend
        self.source_language = source_language
        self.target_language = target_language
        self.threshold = threshold
        self.on_started = on_started
        self.on_progress = on_progress
        self.on_partial = on_partial
        self.on_error = on_error

        self._chunks: List[Chunk] = []
        self._in_flight: Optional[Tuple[int, asyncio.Future]] = None
        self._completed = 0
        self._cancelled = False

    @property
    def chunks(self) -> List[Chunk]:
        return list(self._chunks)

    @property
    def in_flight(self) -> Optional[int]:
        """Index of the chunk whose request is pending, if any."""

        return self._in_flight[0] if self._in_flight is not None else None

    def current_text(self) -> str:
        return assemble(self._chunks)

    async def refine(
        self,
        source_text: str,
        machine_translated_text: str,
    ) -> Optional[str]:
        """Refine ``machine_translated_text`` and return the final text.

        Returns ``None`` when there is nothing to refine or when the queue
        was cancelled. Raises ``RefinementHalted`` when the backend reports
        an explicit error; per-chunk failures only leave that chunk
        unrefined.
        """

        if self._in_flight is not None or self._chunks:
            self.cancel()
        self._cancelled = False
        self._completed = 0

        if not source_text.strip():
            return None
        self._chunks = build_chunks(
            source_text,
            machine_translated_text,
            self.threshold,
        )
        if not self._chunks:
            return None

        total = len(self._chunks)
        logger.debug("Created %d refinement chunk(s)", total)
        if self.on_started:
            self.on_started(total)
        if self.on_progress:
            self.on_progress(0, total)

        while True:
            index = self._next_pending()
            if index is None:
                break
            if not await self._dispatch(index):
                return None

        return self.current_text()

    def cancel(self) -> None:
        """Abort the pending request and drop all chunk state."""

        self._cancelled = True
        if self._in_flight is not None:
            index, request = self._in_flight
            logger.debug("Aborting refinement request for chunk %d", index)
            request.cancel()
        self._in_flight = None
        self._chunks = []
        self._completed = 0

    # --- Internal helpers -------------------------------------------------

    def _next_pending(self) -> Optional[int]:
        active = 0 if self._in_flight is None else 1
        if active >= self.MAX_CONCURRENT:
            return None
        for chunk in self._chunks:
            if not chunk.completed and chunk.index != self.in_flight:
                return chunk.index
        return None

    async def _dispatch(self, index: int) -> bool:
        """Send one chunk and record its outcome. Returns False if cancelled."""

        prompt = build_prompt(
            self._chunks,
            index,
            source_language=self.source_language,
            target_language=self.target_language,
        )
        logger.debug("Sending chunk %d to %s", index, self.backend.name)
        request = asyncio.ensure_future(self.backend.complete(prompt))
        self._in_flight = (index, request)
        response = ""
        try:
            response = await request
        except asyncio.CancelledError:
            if self._cancelled:
                return False
            request.cancel()
            raise
        except RefinementHalted as exc:
            self._report_error(str(exc))
            raise RefinementHalted(str(exc), partial_text=self.current_text()) from exc
        except RefinementError as exc:
            logger.warning("Refinement of chunk %d failed: %s", index, exc)
            self._chunks[index].error = str(exc)
            self._report_error(str(exc))
        finally:
            if self._in_flight is not None and self._in_flight[1] is request:
                self._in_flight = None

        if self._cancelled:
            return False

        chunk = self._chunks[index]
        refined = strip_reasoning(response).strip()
        if refined:
            chunk.refined_text = refined
        chunk.completed = True
        self._completed += 1
        total = len(self._chunks)
        logger.debug("Chunk %d done, %d/%d", index, self._completed, total)

        if self.on_partial:
            self.on_partial(self.current_text())
        if self.on_progress:
            self.on_progress(self._completed, total)
        return True

    def _report_error(self, message: str) -> None:
        if self.on_error:
            self.on_error(message)
