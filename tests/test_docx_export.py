from docx import Document

from ad_review.docx_export import ISSUE_HEADERS, report_docx_bytes, write_report_docx
from ad_review.models import Rating, ReportRecord
from ad_review.report_parser import content_hash, extract_issues, row_keys


REPORT = (
    "スコア: 66\n\n"
    "## 総評\n要修正箇所があります。\n\n"
    "| No. | 指摘箇所 | 指摘内容 |\n|---|---|---|\n"
    "| 1 | 見出し | 誇大表現 |\n| 2 | 注釈 | 根拠不足 |\n"
)


def make_record(**overrides) -> ReportRecord:
    data = {
        "id": "abc123",
        "title": "化粧水 LP",
        "score": 66,
        "summary": "要修正箇所があります。",
        "raw_output": REPORT,
        "user_email": "reviewer@example.com",
        "user_rating": Rating.B,
        "human_issue_count": 3,
    }
    data.update(overrides)
    return ReportRecord(**data)


def test_export_writes_issue_table_with_checks(tmp_path):
    record = make_record()
    keys = row_keys(content_hash(REPORT), extract_issues(REPORT))
    out = tmp_path / "out" / "review.docx"

    write_report_docx(record, out, acknowledged={keys[0]: True, keys[1]: False})

    doc = Document(str(out))
    text = "\n".join(p.text for p in doc.paragraphs)
    assert "化粧水 LP" in text
    assert "AI issues: 2" in text
    assert "Human issues: 3" in text
    assert "Difference: 1" in text
    assert "Rating: B" in text

    table = doc.tables[0]
    assert tuple(c.text for c in table.rows[0].cells) == ISSUE_HEADERS
    assert [c.text for c in table.rows[1].cells] == ["1", "見出し", "誇大表現", "✓"]
    assert table.rows[2].cells[3].text == ""


def test_export_without_table_says_so(tmp_path):
    record = make_record(raw_output="## 総評\n問題なし", human_issue_count=None, user_rating=None)
    out = tmp_path / "empty.docx"
    out.write_bytes(report_docx_bytes(record))

    doc = Document(str(out))
    text = "\n".join(p.text for p in doc.paragraphs)
    assert doc.tables == []
    assert "No checklist items were found in this report." in text
    assert "Rating: not rated" in text
