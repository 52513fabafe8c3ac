"""Command line interface for the Quire document translator."""

from __future__ import annotations

import argparse
import asyncio
import logging
import pathlib
import re
import sys
from typing import Any, Dict, Iterable, Optional, Tuple

from .backends import RefinementBackend, build_backend
from .configuration import QuireConfig, get_settings, load_settings, provider_debug_enabled
from .errors import (
    ConfigurationError,
    OverwriteRefusedError,
    QuireError,
    RefinementConfigurationError,
)
from .formats import supported_extensions
from .pipeline import DocumentPipeline, TranslationSummary, validate_paths
from .policy import ErrorPolicy
from .translators import build_translator

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="quire",
        description=(
            "Translate plain text, Word, EPUB and PDF documents, optionally "
            "refining the machine translation with an AI model."
        ),
    )
    parser.add_argument(
        "input_file",
        nargs="?",
        help="Path to the document to translate ("
        + ", ".join(supported_extensions())
        + ").",
    )
    parser.add_argument(
        "-o",
        "--output",
        help="Output file path. Defaults to appending the target language.",
    )
    parser.add_argument(
        "-s",
        "--source-language",
        help="Source language name (default from configuration: English).",
    )
    parser.add_argument(
        "-t",
        "--target-language",
        help="Target language name (default from configuration: French).",
    )
    parser.add_argument(
        "--translator",
        choices=["echo", "command", "openai"],
        help="Machine translation engine.",
    )
    parser.add_argument(
        "--translator-command",
        help="External engine command line (reads stdin, writes stdout).",
    )
    parser.add_argument(
        "-m",
        "--model",
        help="Model for the openai translator.",
    )
    parser.add_argument(
        "--refine",
        action="store_true",
        default=None,
        help="Improve the machine translation with an AI refinement backend.",
    )
    parser.add_argument(
        "--refine-provider",
        help="Refinement backend: ollama, lm_studio, openai, claude or gemini.",
    )
    parser.add_argument("--refine-model", help="Refinement model identifier.")
    parser.add_argument("--refine-url", help="Refinement server URL (local backends).")
    parser.add_argument(
        "--on-translation-error",
        choices=["abort", "skip"],
        help="Stop on the first failed segment (abort) or keep its source text (skip).",
    )
    parser.add_argument(
        "--converter",
        help="Path to the LibreOffice executable used for PDF input.",
    )
    parser.add_argument(
        "-f",
        "--force",
        action="store_true",
        help="Allow overwriting the output file if it already exists.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show detailed progress information.",
    )
    parser.add_argument(
        "--debug-provider",
        action="store_true",
        help="Log complete provider requests and responses for troubleshooting.",
    )
    parser.add_argument(
        "--list-models",
        action="store_true",
        help="List the models offered by the refinement backend and exit.",
    )
    parser.add_argument(
        "--check-connection",
        action="store_true",
        help="Test the refinement backend connection and exit.",
    )
    return parser


def sanitise_language_for_filename(language: str) -> str:
    """Generate a filesystem-friendly suffix from a language descriptor."""

    collapsed = re.sub(r"\s+", "-", language.strip())
    ascii_only = collapsed.encode("ascii", "ignore").decode("ascii")
    cleaned = re.sub(r"[^A-Za-z0-9\-]+", "", ascii_only)
    return cleaned or "translated"


def derive_output_path(input_path: pathlib.Path, language: str) -> pathlib.Path:
    suffix = input_path.suffix
    # PDF translations are written as Word documents.
    if suffix.lower() == ".pdf":
        suffix = ".docx"
    addition = sanitise_language_for_filename(language)
    return input_path.with_name(f"{input_path.stem}_{addition}{suffix}")


def _overrides_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        key: value
        for key, value in {
            "TRANSLATOR": args.translator,
            "TRANSLATOR_COMMAND": args.translator_command,
            "TRANSLATOR_MODEL": args.model,
            "SOURCE_LANGUAGE": args.source_language,
            "TARGET_LANGUAGE": args.target_language,
            "REFINEMENT_ENABLED": args.refine,
            "REFINEMENT_PROVIDER": args.refine_provider,
            "REFINEMENT_MODEL": args.refine_model,
            "REFINEMENT_URL": args.refine_url,
            "TRANSLATION_FAILURE_POLICY": args.on_translation_error,
            "CONVERTER_PATH": args.converter,
        }.items()
        if value is not None
    }


def make_backend(settings: QuireConfig, *, debug: bool) -> RefinementBackend:
    provider = settings.REFINEMENT_PROVIDER
    return build_backend(
        provider,
        url=settings.REFINEMENT_URL,
        model=settings.REFINEMENT_MODEL,
        api_key=settings.api_key_for(provider),
        debug=debug,
    )


def execute_translation(
    *,
    settings: QuireConfig,
    input_file: str,
    output_file: Optional[str],
    force_overwrite: bool,
    provider_debug: bool,
) -> Tuple[int, Optional[TranslationSummary], Optional[str]]:
    """Execute a translation run and return the exit code, summary, and message."""

    input_path = pathlib.Path(input_file).expanduser().resolve()
    output_path = (
        pathlib.Path(output_file).expanduser().resolve()
        if output_file
        else derive_output_path(input_path, settings.TARGET_LANGUAGE)
    )

    try:
        validate_paths(input_path, output_path, force_overwrite=force_overwrite)
    except OverwriteRefusedError as exc:
        return EXIT_FAILURE, None, str(exc)
    except QuireError as exc:
        return EXIT_FAILURE, None, str(exc)

    output_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        translator = build_translator(
            settings.TRANSLATOR,
            command=settings.TRANSLATOR_COMMAND,
            model=settings.TRANSLATOR_MODEL,
            api_key=settings.OPENAI_API_KEY,
            source_language=settings.SOURCE_LANGUAGE,
            target_language=settings.TARGET_LANGUAGE,
            debug=provider_debug,
        )
    except ConfigurationError as exc:
        return EXIT_FAILURE, None, str(exc)

    backend: Optional[RefinementBackend] = None
    if settings.REFINEMENT_ENABLED:
        try:
            backend = make_backend(settings, debug=provider_debug)
        except RefinementConfigurationError as exc:
            logger.warning("AI improvement disabled: %s", exc)

    pipeline = DocumentPipeline(
        input_path=input_path,
        output_path=output_path,
        translator=translator,
        refinement_backend=backend,
        source_language=settings.SOURCE_LANGUAGE,
        target_language=settings.TARGET_LANGUAGE,
        error_policy=ErrorPolicy(
            skip_failed_segments=settings.TRANSLATION_FAILURE_POLICY == "skip"
        ),
        converter=settings.CONVERTER_PATH,
    )

    async def run() -> TranslationSummary:
        try:
            return await pipeline.run_async()
        finally:
            await translator.aclose()
            if backend is not None:
                await backend.aclose()

    try:
        summary = asyncio.run(run())
    except KeyboardInterrupt:
        return EXIT_CANCELLED, None, "Translation interrupted by user."
    except QuireError as exc:
        return EXIT_FAILURE, None, str(exc)

    if summary.cancelled:
        return EXIT_CANCELLED, summary, summary.message
    return EXIT_OK, summary, None


def print_summary(summary: TranslationSummary) -> None:
    """Output a friendly report once processing completes."""

    if summary.cancelled:
        print("\nTranslation cancelled.")
    else:
        print("\nTranslation complete.")
    print(f"  Input file:      {summary.input_path}")
    print(f"  Output file:     {summary.output_path}")
    print(f"  Document type:   {summary.document_format}")
    print(
        "  Segments:        "
        f"{summary.translated_segments} translated / {summary.total_segments} total "
        f"({summary.skipped_segments} skipped)"
    )
    print(f"  Translator:      {summary.translator_name}")
    if summary.refinement_provider:
        print(
            f"  AI improvement:  {summary.refinement_provider} "
            f"({summary.refined_segments} segment(s) refined)"
        )
    print(f"  Elapsed time:    {summary.elapsed_seconds:.2f} seconds")
    if summary.error_messages:
        print("  Notes:")
        for message in summary.error_messages:
            print(f"    - {message}")


def _probe_backend(settings: QuireConfig, *, debug: bool, list_models: bool) -> int:
    try:
        backend = make_backend(settings, debug=debug)
    except RefinementConfigurationError as exc:
        print(exc)
        return EXIT_FAILURE

    async def probe() -> int:
        try:
            if list_models:
                models = await backend.list_models()
                if not models:
                    print(f"No models reported by {backend.name}.")
                for name in models:
                    print(name)
                return EXIT_OK
            ok, message = await backend.check_connection()
            print(message)
            return EXIT_OK if ok else EXIT_FAILURE
        finally:
            await backend.aclose()

    try:
        return asyncio.run(probe())
    except QuireError as exc:
        print(exc)
        return EXIT_FAILURE


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    overrides = _overrides_from_args(args)
    try:
        settings = load_settings(overrides=overrides) if overrides else get_settings()
    except ConfigurationError as exc:
        print(exc)
        return EXIT_FAILURE
    provider_debug = bool(args.debug_provider) or provider_debug_enabled(settings)

    if args.list_models or args.check_connection:
        return _probe_backend(settings, debug=provider_debug, list_models=args.list_models)

    if args.input_file is None:
        parser.error("the following arguments are required: input_file")

    exit_code, summary, message = execute_translation(
        settings=settings,
        input_file=args.input_file,
        output_file=args.output,
        force_overwrite=args.force,
        provider_debug=provider_debug,
    )

    if message:
        print(message)
    if summary:
        print_summary(summary)
    return exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
