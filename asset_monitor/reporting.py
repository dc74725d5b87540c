"""Console and spreadsheet rendering of pipeline results."""
from __future__ import annotations

from typing import Iterable, Sequence

from .core import ProcessingResult
from .findings import ComplianceStatus, Violation
from .model import format_timestamp


def print_results(results: Iterable[ProcessingResult]) -> None:
    """Pretty-print one line per processed message to stdout."""

    results = list(results)
    if not results:
        print("No messages processed.")
        return

    header = f"{'State':<9} {'Compliant':<9} {'Asset':<50} Detail"
    print(header)
    print("-" * len(header))
    for result in results:
        if result.status is None:
            print(f"{result.state.value:<9} {'-':<9} {'-':<50} {result.reason}")
            continue
        name = result.status.asset_name
        asset = ("..." + name[-47:]) if len(name) > 50 else name
        verdict = "deleted" if result.status.deleted else str(result.status.compliant).lower()
        detail = "; ".join(v.non_compliance.message for v in result.violations) or "-"
        print(f"{result.state.value:<9} {verdict:<9} {asset:<50} {detail}")


def export_statuses_to_excel(statuses: Iterable[ComplianceStatus], path: str) -> str:
    """Write compliance *statuses* to an Excel workbook located at *path*."""

    headers = ("Asset", "Rule", "Compliant", "Deleted", "Origin", "Inventory time")
    rows = (
        (
            status.asset_name,
            status.rule_name,
            status.compliant,
            status.deleted,
            status.asset_inventory_origin,
            format_timestamp(status.asset_inventory_timestamp) or "",
        )
        for status in statuses
    )
    return _export_rows_to_excel(rows, headers, path, sheet_title="Compliance", purpose="compliance statuses")


def export_violations_to_excel(violations: Iterable[Violation], path: str) -> str:
    """Write *violations* to an Excel workbook located at *path*."""

    headers = ("Asset", "Constraint", "Severity", "Message", "Owner")
    rows = (
        (
            violation.feed_message.asset.name,
            violation.constraint_config.name,
            violation.constraint_config.severity,
            violation.non_compliance.message,
            violation.feed_message.asset.owner,
        )
        for violation in violations
    )
    return _export_rows_to_excel(rows, headers, path, sheet_title="Violations", purpose="violations")


def _export_rows_to_excel(
    rows: Iterable[Sequence[object]],
    headers: Sequence[str],
    path: str,
    *,
    sheet_title: str,
    purpose: str,
) -> str:
    try:
        from openpyxl import Workbook
        from openpyxl.utils import get_column_letter
    except ImportError as exc:  # pragma: no cover - optional dependency
        raise RuntimeError(
            "The 'openpyxl' package is required to export "
            f"{purpose} to Excel. Install it with 'pip install asset-monitor[excel]'."
        ) from exc

    workbook = Workbook()
    sheet = workbook.active
    sheet.title = sheet_title
    sheet.append(list(headers))
    widths = [len(header) for header in headers]
    for row in rows:
        values = list(row)
        sheet.append(values)
        for idx, value in enumerate(values):
            widths[idx] = max(widths[idx], len(str(value)))
    for idx, width in enumerate(widths, start=1):
        sheet.column_dimensions[get_column_letter(idx)].width = min(width + 2, 80)
    workbook.save(path)
    return path


__all__ = ["export_statuses_to_excel", "export_violations_to_excel", "print_results"]
