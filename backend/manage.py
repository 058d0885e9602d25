#!/usr/bin/env python3
import argparse
import json
import logging
from pathlib import Path

from models.media_models import CropRegion, MediaKind, ModificationAction, TrimRange

logger = logging.getLogger(__name__)


def _parse_crop(value: str) -> CropRegion:
    parts = [int(part) for part in value.split(",")]
    if len(parts) != 4:
        raise argparse.ArgumentTypeError("--crop expects LEFT,TOP,RIGHT,BOTTOM")
    left, top, right, bottom = parts
    return CropRegion(left=left, top=top, right=right, bottom=bottom)


def _parse_trim(value: str) -> TrimRange:
    parts = [float(part) for part in value.split(",")]
    if len(parts) != 2:
        raise argparse.ArgumentTypeError("--trim expects START,END in seconds")
    return TrimRange(start_time=parts[0], end_time=parts[1])


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Media processing worker and maintenance tools")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("worker", help="Recover abandoned files and run the rq worker")
    check = sub.add_parser("check-queue", help="Process queued files in this process")
    check.add_argument("--limit", type=int, default=None, help="Stop after this many files")
    sub.add_parser("recover", help="Fail files left in processing by a dead worker")
    sub.add_parser("housekeeping", help="Fail stale files and delete expired uploads")

    reconcile = sub.add_parser("reconcile", help="Compare variant rows against disk")
    reconcile.add_argument(
        "--fix",
        action="store_true",
        help="Delete variant rows whose artifact is missing",
    )

    local = sub.add_parser("process-local", help="Run one pipeline without the catalog")
    local.add_argument("input", help="Source media file")
    local.add_argument("output_dir", help="Directory for derived files")
    local.add_argument(
        "--kind",
        choices=[kind.value for kind in MediaKind],
        default=None,
        help="Target kind (defaults to the detected kind)",
    )
    local.add_argument("--crop", type=_parse_crop, default=None, help="LEFT,TOP,RIGHT,BOTTOM")
    local.add_argument("--trim", type=_parse_trim, default=None, help="START,END in seconds")
    return parser.parse_args(argv)


def _process_local(args: argparse.Namespace) -> None:
    from operators.media_processor import ProgressReporter, run_local
    from utils.media_detection import detect_media, validate_conversion

    source = Path(args.input).resolve()
    if not source.exists():
        raise SystemExit(f"Input file not found: {source}")

    source_kind, _ = detect_media(source)
    kind = MediaKind(args.kind) if args.kind else source_kind
    validate_conversion(source_kind, kind)

    modifications = []
    if args.crop or args.trim:
        modifications.append(ModificationAction(crop=args.crop, trim=args.trim))

    reporter = ProgressReporter()
    reporter.subscribe(lambda percent: logger.info("progress %d%%", percent))
    result = run_local(kind, source, Path(args.output_dir).resolve(), modifications, reporter)
    print(json.dumps(result.model_dump(mode="json"), indent=2))


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)

    from redis_client.worker import configure_logging

    configure_logging()

    if args.command == "worker":
        from redis_client.worker import main as worker_main

        worker_main()
        return
    if args.command == "process-local":
        _process_local(args)
        return

    from redis_client.jobs import get_media_queue, housekeeping_job, reconcile_job

    if args.command == "check-queue":
        from operators.queue_operator import MediaQueue
        from redis_client.publisher import get_file_event_publisher

        publisher = get_file_event_publisher()
        processed = MediaQueue(notifier=publisher).drain(limit=args.limit)
        publisher.close()
        print(json.dumps([str(file_id) for file_id in processed], indent=2))
    elif args.command == "recover":
        swept = get_media_queue().recover_after_restart()
        print(json.dumps([str(file_id) for file_id in swept], indent=2))
    elif args.command == "housekeeping":
        print(json.dumps(housekeeping_job(), indent=2))
    elif args.command == "reconcile":
        print(json.dumps(reconcile_job(fix=args.fix), indent=2))


if __name__ == "__main__":
    main()
