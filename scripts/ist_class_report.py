"""Compute an aggregated IST class report for one course and print it as JSON."""
from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, List, Sequence

from engines.class_report import DEFAULT_GAP_THRESHOLD, DEFAULT_MAX_SKILLS, compute_teacher_class_report
from errors import ConfigurationError, MalformedEventDataError, StorageError, StorageUnavailableError

EXIT_OK = 0
EXIT_MALFORMED = 2
EXIT_UNAVAILABLE = 3
EXIT_CONFIG = 4


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("course_id", help="Course whose IST events should be aggregated")
    parser.add_argument(
        "--events",
        type=str,
        default=None,
        help="JSON array of IST events (default: read from the configured IST store)",
    )
    parser.add_argument(
        "--max-skills",
        type=int,
        default=DEFAULT_MAX_SKILLS,
        help=f"Number of top skills to list (default: {DEFAULT_MAX_SKILLS})",
    )
    parser.add_argument(
        "--gap-threshold",
        type=float,
        default=DEFAULT_GAP_THRESHOLD,
        help=f"Share of assignments below which a skill is a gap (default: {DEFAULT_GAP_THRESHOLD})",
    )
    parser.add_argument("--since", type=datetime.fromisoformat, default=None, help="ISO timestamp, inclusive (configured store only)")
    parser.add_argument("--until", type=datetime.fromisoformat, default=None, help="ISO timestamp, exclusive (configured store only)")
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Optional path to write the JSON report",
    )
    return parser


def _load_dataset(path: str) -> List[Any]:
    """Load raw events from a mock dataset file without validating them."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise StorageUnavailableError(f"Failed to load IST dataset {path}: {exc}") from exc
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedEventDataError(f"IST dataset {path} is not valid JSON: {exc}") from exc
    if not isinstance(payload, list):
        raise MalformedEventDataError(f"IST dataset {path} must contain a JSON array of events.")
    return payload


def _load_events(args: argparse.Namespace) -> List[Any]:
    if args.events:
        return _load_dataset(args.events)
    from repositories import get_ist_event_repository

    return get_ist_event_repository().query_events(args.course_id, since=args.since, until=args.until)


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        events = _load_events(args)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG
    except MalformedEventDataError as exc:
        print(f"Malformed IST source data: {exc}", file=sys.stderr)
        return EXIT_MALFORMED
    except StorageError as exc:
        print(f"IST event store not reachable: {exc}", file=sys.stderr)
        return EXIT_UNAVAILABLE

    report = compute_teacher_class_report(
        events,
        args.course_id,
        max_skills=args.max_skills,
        gap_threshold=args.gap_threshold,
    )
    payload = json.dumps(report.model_dump(mode="json", by_alias=True), indent=2, ensure_ascii=False)
    if args.output:
        Path(args.output).write_text(payload + "\n", encoding="utf-8")
    print(payload)

    if report.total_events == 0:
        print(f"No IST events found for course {args.course_id}.", file=sys.stderr)
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
