"""Extract the flagged-issue table from an AI compliance report.

The analysis backend returns free-form markdown. Somewhere in it there is
(usually) one table whose header carries a ``No.`` column and a ``指摘箇所``
(flagged location) column; every data row of that table is one issue the
reviewer has to acknowledge. Everything that counts issues goes through
``extract_issues`` so the rendered checklist and the issue count can never
disagree.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

NUMBER_HEADER_MARKER = "No."
LOCATION_HEADER_MARKER = "指摘箇所"

_SEQUENCE_PATTERN = re.compile(r"[0-9]+")
_SEPARATOR_PATTERN = re.compile(r"\|[\s:|-]*-[\s:|-]*\|")


@dataclass(frozen=True)
class IssueRecord:
    sequence_number: str
    location: str
    description: str


def _is_table_line(line: str) -> bool:
    return line.startswith("|")


def _is_header(line: str) -> bool:
    return (
        _is_table_line(line)
        and NUMBER_HEADER_MARKER in line
        and LOCATION_HEADER_MARKER in line
    )


def _is_separator(line: str) -> bool:
    return bool(_SEPARATOR_PATTERN.fullmatch(line))


def _interior_cells(line: str) -> List[str]:
    return [cell.strip() for cell in line.split("|")[1:-1]]


def extract_issues(report_text: Optional[str]) -> List[IssueRecord]:
    """
    Return the issue rows of the first flagged-issue table, in source order.

    Rows whose first cell is not a plain digit string are skipped without
    leaving the table; the first non-table line ends the scan. A second
    issue table later in the document is never read.
    """
    if not report_text:
        return []

    issues: List[IssueRecord] = []
    inside_table = False
    for raw_line in report_text.splitlines():
        line = raw_line.strip()
        if not inside_table:
            if _is_header(line):
                inside_table = True
            continue

        if not _is_table_line(line):
            break
        if _is_separator(line) or not line.endswith("|"):
            continue

        cells = _interior_cells(line)
        if not cells or not _SEQUENCE_PATTERN.fullmatch(cells[0]):
            continue
        issues.append(
            IssueRecord(
                sequence_number=cells[0],
                location=cells[1] if len(cells) > 1 else "",
                description=cells[2] if len(cells) > 2 else "",
            )
        )
    return issues


def count_issues(report_text: Optional[str]) -> int:
    """AI issue count for a report; always derived from ``extract_issues``."""
    return len(extract_issues(report_text))


def content_hash(report_text: Optional[str]) -> str:
    """Stable digest identifying one report text by value."""
    return hashlib.sha256((report_text or "").encode("utf-8")).hexdigest()


def row_keys(digest: str, issues: Iterable[IssueRecord]) -> List[str]:
    """
    Checklist keys for each issue row, parallel to ``issues``.

    Keys combine the report digest with the row's sequence number. When a
    table repeats a number, later occurrences get a ``#n`` suffix so each
    row keeps its own checkbox.
    """
    prefix = digest[:16]
    seen: dict[str, int] = {}
    keys: List[str] = []
    for issue in issues:
        occurrence = seen.get(issue.sequence_number, 0) + 1
        seen[issue.sequence_number] = occurrence
        key = f"{prefix}-row-{issue.sequence_number}"
        if occurrence > 1:
            key = f"{key}#{occurrence}"
        keys.append(key)
    return keys
