"""Server-rendered review page: the report, its checklist, and the rating form."""

from __future__ import annotations

import json
from html import escape
from typing import Any, List, Optional

from .checklist import ChecklistRow, ReviewSession
from .models import CurrentUser, Rating, ReportRecord


def _json_for_script_tag(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False).replace("</", "<\\/")


def _render_rows(rows: List[ChecklistRow]) -> str:
    if not rows:
        return '<p class="empty">No checklist items were found in this report.</p>'
    out = []
    for row in rows:
        classes = ["row"]
        if row.acknowledged:
            classes.append("done")
        if row.highlighted:
            classes.append("flag")
        checked = " checked" if row.acknowledged else ""
        out.append(
            f'<label class="{" ".join(classes)}" data-key="{escape(row.key)}">'
            f'<input type="checkbox" data-key="{escape(row.key)}"{checked} />'
            f'<span class="no">{escape(row.issue.sequence_number)}</span>'
            f'<span class="loc">{escape(row.issue.location)}</span>'
            f'<span class="desc">{escape(row.issue.description)}</span>'
            "</label>"
        )
    return "\n".join(out)


def _render_rating_form(record: ReportRecord, unlocked: bool) -> str:
    disabled = "" if unlocked else " disabled"
    current = record.user_rating.value if record.user_rating else ""
    options = "".join(
        f'<option value="{grade.value}"{" selected" if grade.value == current else ""}>'
        f"{grade.value}</option>"
        for grade in Rating
    )
    count = "" if record.human_issue_count is None else str(record.human_issue_count)
    return f"""<form id="rating" class="rating"{disabled}>
      <label>Rating <select name="rating"{disabled}>{options}</select></label>
      <label>Issues you found <input name="human_issue_count" inputmode="numeric" value="{count}"{disabled} /></label>
      <button type="submit"{disabled}>Submit rating</button>
    </form>"""


def render_review_page(
    *,
    record: ReportRecord,
    session: ReviewSession,
    user: Optional[CurrentUser] = None,
) -> str:
    rows = session.render()
    bootstrap = {
        "report_id": record.id,
        "status": session.status.value,
        "total": session.total_count,
        "acknowledged": session.acknowledged_count(),
        "user": user.model_dump() if user else None,
    }
    bootstrap_json = _json_for_script_tag(bootstrap)
    progress = f"{session.acknowledged_count()} / {session.total_count}"

    return f"""<!doctype html>
<html lang="ja">
<head>
  <meta charset="utf-8" />
  <meta name="viewport" content="width=device-width, initial-scale=1" />
  <title>{escape(record.title)} | Compliance Review</title>
  <style>
    :root {{
      --paper: #fbfaf7;
      --ink: #1d232b;
      --muted: #5f6b78;
      --stroke: #d9dee4;
      --accent: #c2410c;
      --ok: #15803d;
      --mono: "Cascadia Mono", "Consolas", "Courier New", monospace;
    }}
    * {{ box-sizing: border-box; }}
    body {{ margin: 0; color: var(--ink); background: var(--paper);
      font-family: "Hiragino Sans", "Yu Gothic", sans-serif; }}
    .wrap {{ max-width: 1080px; margin: 0 auto; padding: 24px 16px 40px; }}
    h1 {{ margin: 0 0 6px; font-size: 28px; }}
    .meta {{ color: var(--muted); font-size: 13px; }}
    .score {{ font-size: 40px; font-weight: 700; }}
    .panel {{ border: 1px solid var(--stroke); border-radius: 12px;
      background: #fff; margin-top: 16px; padding: 14px 16px; }}
    .row {{ display: grid; grid-template-columns: 24px 48px 1fr 2fr; gap: 10px;
      padding: 8px 6px; border-bottom: 1px solid var(--stroke); align-items: start; }}
    .row.done {{ color: var(--muted); }}
    .row.flag {{ background: #fff1ec; outline: 2px solid var(--accent); }}
    .no {{ font-family: var(--mono); }}
    .status {{ margin-top: 10px; font-size: 13px; color: var(--muted); min-height: 1.2em; }}
    .status.err {{ color: var(--accent); }}
    .rating[disabled] {{ opacity: 0.5; }}
    pre {{ white-space: pre-wrap; font-family: inherit; }}
  </style>
</head>
<body>
  <div class="wrap">
    <h1>{escape(record.title)}</h1>
    <div class="meta">{record.created_at:%Y-%m-%d %H:%M} UTC · {escape(record.user_name or record.user_email or "")}</div>
    <div class="score">{record.score:.0f}<small>/100</small></div>

    <section class="panel">
      <h2>Checklist <small id="progress">{progress}</small></h2>
      <div id="rows">
{_render_rows(rows)}
      </div>
      <button id="complete" type="button">Mark review complete</button>
      <div id="status" class="status"></div>
    </section>

    <section class="panel">
      <h2>Accuracy feedback</h2>
      {_render_rating_form(record, session.rating_unlocked)}
    </section>

    <section class="panel">
      <h2>Report</h2>
      <pre>{escape(record.raw_output)}</pre>
    </section>
  </div>

  <script id="bootstrap" type="application/json">{bootstrap_json}</script>
  <script>
    const bootstrap = JSON.parse(document.getElementById("bootstrap").textContent);
    const el = (id) => document.getElementById(id);
    const base = `/api/history/${{encodeURIComponent(bootstrap.report_id)}}`;

    function setStatus(msg, isError) {{
      el("status").textContent = msg || "";
      el("status").className = isError ? "status err" : "status";
    }}

    async function postJson(url, body) {{
      const headers = {{ "Content-Type": "application/json" }};
      if (bootstrap.user) {{
        headers["X-User-Email"] = bootstrap.user.email;
        if (bootstrap.user.name) headers["X-User-Name"] = bootstrap.user.name;
      }}
      const resp = await fetch(url, {{ method: "POST", headers, body: JSON.stringify(body) }});
      const text = await resp.text();
      let data;
      try {{ data = JSON.parse(text); }} catch {{
        throw new Error(`HTTP ${{resp.status}}: ${{text}}`);
      }}
      if (!resp.ok) {{
        const detail = data.detail || data.message || JSON.stringify(data);
        throw new Error(`HTTP ${{resp.status}}: ${{detail}}`);
      }}
      return data;
    }}

    for (const box of document.querySelectorAll("#rows input[type=checkbox]")) {{
      box.addEventListener("change", async () => {{
        try {{
          const data = await postJson(`${{base}}/checklist/toggle`, {{
            key: box.dataset.key, acknowledged: box.checked,
          }});
          box.closest(".row").classList.toggle("done", box.checked);
          el("progress").textContent = `${{data.acknowledged_count}} / ${{data.total_count}}`;
        }} catch (e) {{
          box.checked = !box.checked;
          setStatus(e.message, true);
        }}
      }});
    }}

    el("complete").addEventListener("click", async () => {{
      try {{
        const data = await postJson(`${{base}}/checklist/complete`, {{}});
        setStatus(data.message, data.outcome === "incomplete");
        if (data.outcome !== "empty") window.location.reload();
      }} catch (e) {{
        setStatus(e.message, true);
      }}
    }});

    el("rating").addEventListener("submit", async (ev) => {{
      ev.preventDefault();
      const form = new FormData(el("rating"));
      try {{
        const data = await postJson(`${{base}}/rating`, {{
          rating: form.get("rating"),
          human_issue_count: form.get("human_issue_count"),
        }});
        setStatus(data.warning || `Saved. Difference from AI: ${{data.difference}}`, !!data.warning);
      }} catch (e) {{
        setStatus(e.message, true);
      }}
    }});
  </script>
</body>
</html>
"""
