"""DOCX export of a reviewed compliance report."""

from __future__ import annotations

from io import BytesIO
from pathlib import Path
from typing import Dict, Optional

from docx import Document
from docx.enum.text import WD_ALIGN_PARAGRAPH
from docx.oxml.ns import qn
from docx.shared import Pt

from .models import ReportRecord
from .report_parser import content_hash, extract_issues, row_keys

ISSUE_HEADERS = ("No.", "指摘箇所", "指摘内容", "確認")
EAST_ASIA_FONT = "Yu Gothic"


def _set_fonts(doc: Document) -> None:
    """Use a font that renders Japanese report text in Word."""
    normal = doc.styles["Normal"]
    normal.font.name = EAST_ASIA_FONT
    normal.font.size = Pt(10.5)
    try:
        normal.element.rPr.rFonts.set(qn("w:eastAsia"), EAST_ASIA_FONT)
    except AttributeError:
        pass


def _count_or_dash(value: Optional[int]) -> str:
    return "-" if value is None else str(value)


def build_report_docx(
    record: ReportRecord,
    acknowledged: Optional[Dict[str, bool]] = None,
) -> Document:
    """
    Render the report header, counts, and the issue checklist.

    ``acknowledged`` maps checklist keys to their state; when omitted the
    check column is left blank.
    """
    doc = Document()
    _set_fonts(doc)

    title = doc.add_heading(record.title, 0)
    title.alignment = WD_ALIGN_PARAGRAPH.CENTER

    meta = doc.add_paragraph()
    meta.add_run(f"Score: {record.score:.0f}/100").bold = True
    meta.add_run(f"   Created: {record.created_at:%Y-%m-%d %H:%M} UTC")
    if record.user_email:
        meta.add_run(f"   By: {record.user_name or record.user_email}")

    counts = doc.add_paragraph()
    counts.add_run(f"AI issues: {record.ai_issue_count}")
    counts.add_run(f"   Human issues: {_count_or_dash(record.human_issue_count)}")
    counts.add_run(f"   Difference: {_count_or_dash(record.issue_difference)}")
    counts.add_run(
        f"   Rating: {record.user_rating.value if record.user_rating else 'not rated'}"
    )

    if record.summary:
        doc.add_heading("Summary", level=1)
        doc.add_paragraph(record.summary)

    issues = extract_issues(record.raw_output)
    doc.add_heading("Flagged issues", level=1)
    if not issues:
        doc.add_paragraph("No checklist items were found in this report.")
    else:
        keys = row_keys(content_hash(record.raw_output), issues)
        table = doc.add_table(rows=1, cols=len(ISSUE_HEADERS))
        table.style = "Table Grid"
        for cell, header in zip(table.rows[0].cells, ISSUE_HEADERS):
            cell.text = header
            for run in cell.paragraphs[0].runs:
                run.bold = True
        for key, issue in zip(keys, issues):
            cells = table.add_row().cells
            cells[0].text = issue.sequence_number
            cells[1].text = issue.location
            cells[2].text = issue.description
            if acknowledged is not None:
                cells[3].text = "✓" if acknowledged.get(key) else ""

    doc.add_heading("Full report", level=1)
    for block in (record.raw_output or "").split("\n\n"):
        if block.strip():
            doc.add_paragraph(block.strip())
    return doc


def write_report_docx(
    record: ReportRecord,
    output_path: Path,
    acknowledged: Optional[Dict[str, bool]] = None,
) -> Path:
    doc = build_report_docx(record, acknowledged)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    doc.save(str(output_path))
    return output_path


def report_docx_bytes(
    record: ReportRecord, acknowledged: Optional[Dict[str, bool]] = None
) -> bytes:
    buffer = BytesIO()
    build_report_docx(record, acknowledged).save(buffer)
    return buffer.getvalue()
