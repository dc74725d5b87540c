"""Command line interface for replaying feeds through the monitor services."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Iterable, Iterator, List, Optional, Tuple

import boto3

from .cache import CacheRecorder, DynamoCacheStore
from .config import MonitorSettings
from .core import ComplianceMonitor, ProcessingResult
from .directory import DirectoryClient, LogEntryConverter, fan_out_group_members
from .directory.identitystore import IdentityStoreDirectoryClient
from .errors import ControlMessage, MonitorError
from .logs import configure_logging
from .model import parse_feed_message
from .publisher import Publisher, SnsPublisher
from .reporting import export_statuses_to_excel, export_violations_to_excel, print_results

REPLAY_ORIGIN = "batch-replay"


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Return parsed command line arguments."""

    parser = argparse.ArgumentParser(description="Evaluate asset change feeds for compliance.")
    parser.add_argument("--profile", help="AWS CLI profile to use", default=None)
    parser.add_argument("--region", help="AWS region of the hosting services", default=None)
    parser.add_argument("--log-level", default="WARNING", help="Log level for the JSON log stream on stderr")
    commands = parser.add_subparsers(dest="command", required=True)

    process = commands.add_parser("process", help="Evaluate JSON-lines feed messages")
    process.add_argument("path", help="File with one feed message per line ('-' for stdin)")
    process.add_argument("--json", dest="json_path", help="Optional path to export statuses and violations as JSON")
    process.add_argument(
        "--excel",
        dest="excel_path",
        help="Optional path to export compliance statuses as an Excel workbook (.xlsx)",
    )
    process.add_argument(
        "--violations-excel",
        dest="violations_excel_path",
        help="Optional path to export violations as an Excel workbook (.xlsx)",
    )

    record = commands.add_parser("record", help="Store JSON-lines feed messages in the cache")
    record.add_argument("path", help="File with one feed message per line ('-' for stdin)")

    convert = commands.add_parser("convert", help="Convert JSON-lines admin activity log entries")
    convert.add_argument("path", help="File with one log entry per line ('-' for stdin)")
    convert.add_argument("--identity-store-id", default=None, help="Identity store holding the groups")
    members = commands.add_parser("members", help="Publish one feed message per member of each group")
    members.add_argument("path", help="File with one group feed message per line ('-' for stdin)")
    members.add_argument("--identity-store-id", default=None, help="Identity store holding the groups")
    return parser.parse_args(argv)


def _lines(path: str) -> Iterator[str]:
    stream = sys.stdin if path == "-" else open(path, encoding="utf-8")
    try:
        for line in stream:
            line = line.strip()
            if line:
                yield line
    finally:
        if stream is not sys.stdin:
            stream.close()


def with_default_origin(line: str, origin: str = REPLAY_ORIGIN) -> str:
    """Set ``origin`` on a JSON object line that has none; other lines pass through."""

    try:
        document = json.loads(line)
    except json.JSONDecodeError:
        return line
    if isinstance(document, dict) and not document.get("origin"):
        document["origin"] = origin
        return json.dumps(document)
    return line


def _process(args: argparse.Namespace, session: boto3.session.Session, settings: MonitorSettings) -> int:
    monitor = ComplianceMonitor.from_session(session, settings)
    results: List[ProcessingResult] = []
    for number, line in enumerate(_lines(args.path), start=1):
        results.append(monitor.process(with_default_origin(line), message_id=f"line-{number}"))
    print_results(results)

    statuses = [r.status for r in results if r.status is not None]
    violations = [v for r in results for v in r.violations]

    if args.json_path:
        with open(args.json_path, "w", encoding="utf-8") as fh:
            json.dump(
                {
                    "complianceStatuses": [s.to_dict() for s in statuses],
                    "violations": [v.to_dict() for v in violations],
                },
                fh,
                indent=2,
                default=str,
            )
        print(f"Results exported to {args.json_path}")

    if args.excel_path:
        try:
            path = export_statuses_to_excel(statuses, args.excel_path)
        except RuntimeError as exc:
            print(f"Failed to export Excel report: {exc}", file=sys.stderr)
        else:
            print(f"Excel report written to {path}")

    if args.violations_excel_path:
        try:
            path = export_violations_to_excel(violations, args.violations_excel_path)
        except RuntimeError as exc:
            print(f"Failed to export violations Excel report: {exc}", file=sys.stderr)
        else:
            print(f"Violations Excel report written to {path}")

    return 1 if any(r.should_retry for r in results) else 0


def _record(args: argparse.Namespace, session: boto3.session.Session, settings: MonitorSettings) -> int:
    recorder = CacheRecorder(DynamoCacheStore.from_session(session, settings.cache_table), settings)
    stored = 0
    for number, line in enumerate(_lines(args.path), start=1):
        try:
            key = recorder.record(with_default_origin(line), message_id=f"line-{number}")
        except MonitorError as exc:
            print(f"Error: line {number}: {exc}", file=sys.stderr)
            return 1
        if key is not None:
            stored += 1
    print(f"{stored} documents stored in {settings.cache_table}")
    return 0


def _convert(args: argparse.Namespace, session: boto3.session.Session, settings: MonitorSettings) -> int:
    identity_store_id = args.identity_store_id or settings.identity_store_id
    if not identity_store_id:
        print("Error: an identity store id is required (--identity-store-id).", file=sys.stderr)
        return 1
    converter = LogEntryConverter(
        settings,
        DynamoCacheStore.from_session(session, settings.cache_table),
        IdentityStoreDirectoryClient.from_session(session, identity_store_id),
        SnsPublisher.from_session(session),
    )
    published = 0
    for number, line in enumerate(_lines(args.path), start=1):
        try:
            published += converter.convert(line, message_id=f"line-{number}")
        except MonitorError as exc:
            print(f"Error: line {number}: {exc}", file=sys.stderr)
    print(f"{published} feed messages published")
    return 0


def publish_group_members(
    lines: Iterable[str],
    directory: DirectoryClient,
    publisher: Publisher,
    settings: MonitorSettings,
) -> Tuple[int, int]:
    """Fan out the members of every group feed message in *lines*.

    Returns ``(published, failed)`` summed over all groups. A line that cannot
    be read or listed is reported on stderr and counted as one failure.
    """

    published = failed = 0
    for number, line in enumerate(lines, start=1):
        try:
            group_feed = parse_feed_message(with_default_origin(line))
            result = fan_out_group_members(
                group_feed,
                directory,
                publisher,
                topic=settings.group_members_topic,
                max_workers=settings.fan_out_workers,
                log_every=settings.log_event_every_x_messages,
                log_base=dict(settings.base_log_fields(), triggering_message_id=f"line-{number}"),
            )
        except (ControlMessage, MonitorError) as exc:
            print(f"Error: line {number}: {exc}", file=sys.stderr)
            failed += 1
            continue
        published += result.published
        failed += result.failed
    return published, failed


def _members(args: argparse.Namespace, session: boto3.session.Session, settings: MonitorSettings) -> int:
    identity_store_id = args.identity_store_id or settings.identity_store_id
    if not identity_store_id:
        print("Error: an identity store id is required (--identity-store-id).", file=sys.stderr)
        return 1
    published, failed = publish_group_members(
        _lines(args.path),
        IdentityStoreDirectoryClient.from_session(session, identity_store_id),
        SnsPublisher.from_session(session),
        settings,
    )
    print(f"{published} member feed messages published, {failed} failed")
    return 1 if failed else 0


_COMMANDS = {"process": _process, "record": _record, "convert": _convert, "members": _members}


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point used by ``python -m asset_monitor``."""

    args = parse_args(argv)
    configure_logging(getattr(logging, str(args.log_level).upper(), logging.WARNING), stream=sys.stderr)
    session = boto3.Session(profile_name=args.profile, region_name=args.region)
    settings = MonitorSettings.from_environment()
    try:
        return _COMMANDS[args.command](args, session, settings)
    except OSError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


__all__ = ["main", "parse_args", "publish_group_members", "with_default_origin"]
