"""Tests for the command line helpers and reports."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


from asset_monitor.cli import parse_args, publish_group_members, with_default_origin
from asset_monitor.core import ProcessingResult, State
from asset_monitor.reporting import export_statuses_to_excel, print_results


def test_parse_args_for_process() -> None:
    args = parse_args(["--region", "eu-west-1", "process", "feed.jsonl", "--json", "out.json"])

    assert args.command == "process"
    assert args.path == "feed.jsonl"
    assert args.region == "eu-west-1"
    assert args.json_path == "out.json"


def test_parse_args_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        parse_args([])


def test_with_default_origin_only_fills_missing_origin() -> None:
    """Replayed lines default to the batch origin."""

    assert json.loads(with_default_origin('{"asset": {}}'))["origin"] == "batch-replay"
    assert json.loads(with_default_origin('{"origin": "real-time"}'))["origin"] == "real-time"
    assert with_default_origin("not json") == "not json"


def test_print_results_lists_each_message(monitor, capsys) -> None:
    done = monitor.process(
        json.dumps({"asset": {"name": "//storage.googleapis.com/b"}, "deleted": True})
    )
    aborted = ProcessingResult(state=State.ABORTED, reason="payload is not JSON")

    print_results([done, aborted])

    out = capsys.readouterr().out
    assert "//storage.googleapis.com/b" in out
    assert "deleted" in out
    assert "payload is not JSON" in out


def test_print_results_without_messages(capsys) -> None:
    print_results([])

    assert "No messages processed." in capsys.readouterr().out


def test_export_statuses_to_excel(monitor, tmp_path) -> None:
    openpyxl = pytest.importorskip("openpyxl")
    result = monitor.process(json.dumps({"asset": {"name": "//storage.googleapis.com/b"}, "deleted": True}))

    path = export_statuses_to_excel([result.status], str(tmp_path / "statuses.xlsx"))

    sheet = openpyxl.load_workbook(path).active
    assert sheet.title == "Compliance"
    assert sheet["A2"].value == "//storage.googleapis.com/b"


def test_parse_args_for_members() -> None:
    args = parse_args(["members", "groups.jsonl", "--identity-store-id", "d-123"])

    assert args.command == "members"
    assert args.path == "groups.jsonl"
    assert args.identity_store_id == "d-123"


class _OneMemberDirectory:
    def list_members(self, group_id, page_token=None):
        return [{"id": f"{group_id}-u1", "email": "Ann@example.org"}], None


def test_publish_group_members_fans_out_each_group(settings, publisher, capsys) -> None:
    """Every group line fans out to the members topic; bad lines count as failures."""

    def group_line(group_id: str) -> str:
        return json.dumps(
            {
                "asset": {
                    "name": f"//directories/C01/groups/{group_id}",
                    "assetType": "www.googleapis.com/admin/directory/groups",
                    "ancestors": ["directories/C01"],
                    "resource": {"id": group_id, "email": f"{group_id}@example.org"},
                },
            }
        )

    published, failed = publish_group_members(
        [group_line("g1"), "not json", group_line("g2")],
        _OneMemberDirectory(),
        publisher,
        settings,
    )

    assert (published, failed) == (2, 1)
    records = publisher.on(settings.group_members_topic)
    assert sorted(r["asset"]["name"] for r in records) == [
        "//directories/C01/groups/g1/members/g1-u1",
        "//directories/C01/groups/g2/members/g2-u1",
    ]
    assert all(r["origin"] == "batch-replay" for r in records)
    assert "line 2" in capsys.readouterr().err
