from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Sequence
from pathlib import Path

from readtube.app.dependencies import (
    get_settings,
    get_transcript_service,
    shutdown_transcript_service,
)
from readtube.app.logging_config import configure_cli_logging
from readtube.app.services.errors import QuotaExceededError, TranscriptPipelineError
from readtube.app.services.orchestrator import TranscriptionFailedError
from readtube.app.services.transcription_models import StrategyHints, TranscriptionRequest
from readtube.app.services.video_ref import parse_video_ref


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Acquire a YouTube transcript through the strategy cascade.",
    )
    parser.add_argument("video", help="Video id or YouTube URL.")
    parser.add_argument("--language", help="Preferred transcript language (for example: pl).")
    parser.add_argument(
        "--caller-id",
        default="cli",
        help="Caller id billed for the acquisition (default: cli).",
    )
    parser.add_argument(
        "--speech-engine",
        choices=("auto", "local", "remote"),
        default="auto",
        help="Restrict the speech stage to one engine.",
    )
    parser.add_argument("--model-size", help="Force a whisper model size for local speech.")
    parser.add_argument(
        "--max-duration",
        type=int,
        help="Longest video (seconds) audio based strategies may process.",
    )
    parser.add_argument(
        "--client-transcript-file",
        type=Path,
        help="Text file used as the client extracted transcript of last resort.",
    )
    parser.add_argument("--output", type=Path, help="Write the transcript to this file.")
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the full result as JSON instead of the bare transcript.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = get_settings()
    configure_cli_logging(settings.log_level)

    try:
        video = parse_video_ref(args.video)
    except TranscriptPipelineError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    client_transcript = None
    if args.client_transcript_file is not None:
        client_transcript = args.client_transcript_file.read_text(encoding="utf-8")

    request = TranscriptionRequest(
        video=video,
        preferred_language=args.language,
        max_duration_seconds=args.max_duration or settings.max_duration_seconds,
        hints=StrategyHints(speech_engine=args.speech_engine, model_size=args.model_size),
        client_transcript=client_transcript,
    )

    service = get_transcript_service()
    try:
        outcome = service.acquire(args.caller_id, request)
    except QuotaExceededError as exc:
        print(f"quota exceeded: {exc}", file=sys.stderr)
        return 3
    except TranscriptionFailedError as exc:
        print(f"transcription failed ({exc.kind}): {exc}", file=sys.stderr)
        print(json.dumps(exc.troubleshooting(), indent=2), file=sys.stderr)
        return 1
    finally:
        shutdown_transcript_service()

    result = outcome.result
    if args.output is not None:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(result.transcript_text, encoding="utf-8")

    if args.json:
        print(json.dumps({**result.as_summary(), "cached": outcome.cached}, indent=2))
    elif args.output is None:
        print(result.transcript_text)
    else:
        print(f"Wrote {result.length_chars} characters ({result.source_strategy}) to {args.output}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
