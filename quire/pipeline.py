"""High-level orchestration for document translation.

A run moves through ``OPENED -> SEGMENTED -> TRANSLATING`` (and
``REFINING`` per unit when a refinement backend is configured) to
``RECONSTRUCTED``. Cancellation is honoured at every await point and leaves
the run in ``CANCELLED`` with nothing written.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import pathlib
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from .backends import RefinementBackend
from .errors import (
    ErrorCategory,
    OpenError,
    OverwriteRefusedError,
    PipelineBusyError,
    QuireError,
    RefinementError,
    RefinementHalted,
    TranslationError,
)
from .formats import detect_format
from .policy import ErrorPolicy
from .reconstructor import reconstruct_document
from .refinement import RefinementQueue
from .segmenter import Segmenter
from .structures import MAX_UNIT_SIZE, ProgressEvent, Segment
from .translators import Translator

logger = logging.getLogger(__name__)

ProgressListener = Callable[[ProgressEvent], None]

_CANCELLED = object()


class RunState(Enum):
    IDLE = "idle"
    OPENED = "opened"
    SEGMENTED = "segmented"
    TRANSLATING = "translating"
    REFINING = "refining"
    RECONSTRUCTED = "reconstructed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CancellationToken:
    """A cancel flag that may be set from any thread.

    Once bound to a running loop it can also be awaited.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._event: Optional[asyncio.Event] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def bind(self) -> None:
        """Attach to the running event loop."""

        with self._lock:
            self._loop = asyncio.get_running_loop()
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            loop, event = self._loop, self._event
        if loop is None or event is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            event.set()
        else:
            loop.call_soon_threadsafe(event.set)

    async def wait(self) -> None:
        if self._event is None:
            self.bind()
        assert self._event is not None
        await self._event.wait()


@dataclass
class TranslationSummary:
    """Report returned after processing a document."""

    input_path: pathlib.Path
    output_path: pathlib.Path
    document_format: str
    state: RunState
    total_segments: int
    translated_segments: int
    skipped_segments: int
    refined_segments: int
    refinement_warnings: int
    translator_name: str
    refinement_provider: Optional[str]
    elapsed_seconds: float
    message: str = ""
    error_messages: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state is RunState.RECONSTRUCTED

    @property
    def cancelled(self) -> bool:
        return self.state is RunState.CANCELLED


class DocumentPipeline:
    """Coordinates segmentation, translation, refinement and reconstruction."""

    def __init__(
        self,
        *,
        input_path: pathlib.Path,
        output_path: pathlib.Path,
        translator: Translator,
        refinement_backend: Optional[RefinementBackend] = None,
        source_language: str = "English",
        target_language: str = "French",
        error_policy: Optional[ErrorPolicy] = None,
        progress: Optional[ProgressListener] = None,
        converter: Optional[str] = None,
        max_size: int = MAX_UNIT_SIZE,
    ) -> None:
        self.input_path = pathlib.Path(input_path)
        self.output_path = pathlib.Path(output_path)
        self.translator = translator
        self.refinement_backend = refinement_backend
        self.error_policy = error_policy or ErrorPolicy()
        self.progress = progress
        self.converter = converter
        self.segmenter = Segmenter(max_size, converter=converter)
        self.cancel_token = CancellationToken()

        self.refiner: Optional[RefinementQueue] = None
        if refinement_backend is not None:
            self.refiner = RefinementQueue(
                refinement_backend,
                source_language=source_language,
                target_language=target_language,
                on_progress=self._on_refine_progress,
                on_partial=self._on_refine_partial,
                on_error=self._on_refine_error,
            )

        self._state = RunState.IDLE
        self._active = False
        self._position = 0
        self._total = 0

    @property
    def state(self) -> RunState:
        return self._state

    def cancel(self) -> None:
        """Request cancellation; safe to call from any thread."""

        logger.info("Cancellation requested")
        self.cancel_token.cancel()

    def run(self) -> TranslationSummary:
        return asyncio.run(self.run_async())

    async def run_async(self) -> TranslationSummary:
        if self._active:
            raise PipelineBusyError("A translation is already running.")
        self._active = True
        self.cancel_token.bind()
        start_time = time.time()
        try:
            return await self._execute(start_time)
        except QuireError:
            self._state = RunState.FAILED
            raise
        finally:
            self._active = False

    # --- Stages -----------------------------------------------------------

    async def _execute(self, start_time: float) -> TranslationSummary:
        document_format = detect_format(self.input_path)
        self._emit("open", 0, 0, f"Opening {self.input_path.name}...")
        self._state = RunState.OPENED
        if self.cancel_token.cancelled:
            return self._cancelled(document_format.value, 0, start_time)

        segments = self.segmenter.segment(self.input_path, self._on_segment_progress)
        self._state = RunState.SEGMENTED
        segments = sorted(segments, key=lambda segment: segment.index)
        self._total = len(segments)
        logger.info("Prepared %d segment(s) for translation", self._total)

        translated: List[Segment] = []
        translated_count = 0
        skipped = 0
        refined = 0
        for position, segment in enumerate(segments, start=1):
            if self.cancel_token.cancelled:
                return self._cancelled(document_format.value, self._total, start_time)
            self._position = position
            self._state = RunState.TRANSLATING
            self._emit(
                "translate",
                position,
                self._total,
                f"Translating segment {position} of {self._total}...",
            )

            try:
                text = await self._until_cancelled(self.translator.translate(segment.text))
            except TranslationError as exc:
                self.error_policy.handle_translation_failure(
                    f"Segment {segment.identifier} could not be translated. {exc}"
                )
                skipped += 1
                translated.append(replace(segment))
                continue
            if text is _CANCELLED:
                return self._cancelled(document_format.value, self._total, start_time)
            self.error_policy.record_success()
            translated_count += 1

            if self.refiner is not None and text.strip():
                self._state = RunState.REFINING
                result = await self._refine(segment, text)
                if result is _CANCELLED:
                    return self._cancelled(document_format.value, self._total, start_time)
                if result is not None:
                    text = result
                    refined += 1

            translated.append(replace(segment, text=text))

        if self.cancel_token.cancelled:
            return self._cancelled(document_format.value, self._total, start_time)

        self._emit("reconstruct", self._total, self._total, "Saving translated document...")
        reconstruct_document(
            self.input_path,
            segments,
            translated,
            self.output_path,
            converter=self.converter,
        )
        self._state = RunState.RECONSTRUCTED
        message = f"Successfully saved to: {self.output_path}"
        self._emit("done", self._total, self._total, message)

        return self._summary(
            document_format.value,
            RunState.RECONSTRUCTED,
            start_time,
            total=self._total,
            translated=translated_count,
            skipped=skipped,
            refined=refined,
            message=message,
        )

    async def _refine(self, segment: Segment, machine_text: str) -> Any:
        """Return refined text, ``None`` to keep ``machine_text``, or the cancel marker."""

        assert self.refiner is not None
        try:
            result = await self._until_cancelled(
                self.refiner.refine(segment.text, machine_text),
                on_cancel=self.refiner.cancel,
            )
        except RefinementHalted as exc:
            # Already recorded through the queue's on_error callback.
            logger.info("AI improvement stopped for segment %d", self._position)
            return exc.partial_text or None
        except RefinementError as exc:
            self.error_policy.record_warning(
                ErrorCategory.REFINEMENT,
                f"AI improvement failed for segment {self._position}: {exc}",
            )
            return None
        if result is _CANCELLED:
            return _CANCELLED
        return result or None

    async def _until_cancelled(
        self,
        awaitable: Awaitable[Any],
        on_cancel: Optional[Callable[[], None]] = None,
    ) -> Any:
        """Await ``awaitable`` unless the run is cancelled first.

        On cancellation the in-flight work is aborted, its result discarded,
        and the cancel marker returned.
        """

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.cancel_token.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done() and not self.cancel_token.cancelled:
                task.cancel()

        if not self.cancel_token.cancelled:
            return task.result()

        if on_cancel is not None:
            on_cancel()
        if not task.done():
            task.cancel()
        with contextlib.suppress(asyncio.CancelledError, QuireError):
            await task
        return _CANCELLED

    # --- Progress ---------------------------------------------------------

    def _emit(self, stage: str, current: int, total: int, message: str = "") -> None:
        if message:
            logger.info(message)
        if self.progress is not None:
            self.progress(ProgressEvent(stage=stage, current=current, total=total, message=message))

    def _on_segment_progress(self, current: int, total: int) -> None:
        self._emit("segment", current, total)

    def _on_refine_progress(self, completed: int, total: int) -> None:
        chunk = min(completed + 1, total)
        self._emit(
            "refine",
            completed,
            total,
            f"AI improving segment {self._position} of {self._total} "
            f"(chunk {chunk}/{total})...",
        )

    def _on_refine_partial(self, text: str) -> None:
        if self.progress is not None:
            self.progress(ProgressEvent(stage="partial", current=self._position, total=self._total, message=text))

    def _on_refine_error(self, message: str) -> None:
        self.error_policy.record_warning(
            ErrorCategory.REFINEMENT,
            f"AI improvement error in segment {self._position}: {message}",
        )

    # --- Summaries --------------------------------------------------------

    def _cancelled(self, document_format: str, total: int, start_time: float) -> TranslationSummary:
        self._state = RunState.CANCELLED
        if self.refiner is not None:
            self.refiner.cancel()
        message = "Translation cancelled"
        self._emit("cancelled", 0, total, message)
        return self._summary(
            document_format,
            RunState.CANCELLED,
            start_time,
            total=total,
            message=message,
        )

    def _summary(
        self,
        document_format: str,
        state: RunState,
        start_time: float,
        *,
        total: int,
        translated: int = 0,
        skipped: int = 0,
        refined: int = 0,
        message: str = "",
    ) -> TranslationSummary:
        return TranslationSummary(
            input_path=self.input_path,
            output_path=self.output_path,
            document_format=document_format,
            state=state,
            total_segments=total,
            translated_segments=translated,
            skipped_segments=skipped,
            refined_segments=refined,
            refinement_warnings=len(self.error_policy.warnings),
            translator_name=self.translator.name,
            refinement_provider=(
                self.refinement_backend.name if self.refinement_backend else None
            ),
            elapsed_seconds=time.time() - start_time,
            message=message,
            error_messages=self.error_policy.messages,
        )


def validate_paths(
    input_path: pathlib.Path,
    output_path: pathlib.Path,
    force_overwrite: bool,
) -> None:
    """Validate input/output path combinations and overwrite policy."""

    if not input_path.exists():
        raise OpenError(
            "Input file not found. Please provide a readable .txt, .docx, .epub or .pdf file."
        )
    if not input_path.is_file():
        raise OpenError("Input path must be a file.")

    detect_format(input_path)

    if input_path.resolve() == output_path.resolve():
        raise OverwriteRefusedError(
            "The output path matches the input document. Refusing to overwrite the source file."
        )

    if output_path.exists() and not force_overwrite:
        raise OverwriteRefusedError(
            "The output file already exists. Rename it or use the overwrite flag."
        )
