"""Command-line entry points for the compliance review desk."""

import json
from pathlib import Path
from typing import List, Optional

import typer
from rich import print as rprint
from rich.table import Table

from .analysis import build_provider, run_analysis
from .analytics import (
    ANALYTICS_TYPES,
    HistoryFilters,
    all_analytics,
    filter_records,
    history_stats,
    user_directory,
)
from .checklist import ChecklistRow, Complete, Empty, ReviewSession
from .config import get_settings
from .docx_export import write_report_docx
from .errors import AdReviewError, RecordNotFoundError
from .feedback import FeedbackRecorder, parse_rating
from .history import AdminStore, JsonlHistoryStore, LoginHistoryStore
from .logging_setup import configure_logging
from .models import AnalysisRequest, ReportRecord

app = typer.Typer(help="Analyze ad copy, review flagged issues, and rate the AI report.")
admin_app = typer.Typer(help="List users and manage admin rights.")
app.add_typer(admin_app, name="admin")


@app.callback()
def _configure(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Override LOG_LEVEL for this run."
    ),
) -> None:
    configure_logging(log_level or get_settings().log_level)


def _history() -> JsonlHistoryStore:
    return JsonlHistoryStore(get_settings().resolved_data_dir())


def _admins() -> AdminStore:
    settings = get_settings()
    return AdminStore(settings.resolved_data_dir(), bootstrap=settings.bootstrap_admins())


def _load_record(record_id: str) -> ReportRecord:
    try:
        return _history().get(record_id)
    except RecordNotFoundError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _read_text(path: Optional[Path], text: Optional[str]) -> str:
    if path is not None and text:
        raise typer.BadParameter("Pass either a file or --text, not both.")
    if path is not None:
        return path.read_text(encoding="utf-8")
    if text:
        return text
    raise typer.BadParameter("Provide a file path or --text.")


def _issue_table(rows: List[ChecklistRow]) -> Table:
    table = Table("#", "No.", "指摘箇所", "指摘内容", "確認")
    for idx, row in enumerate(rows, start=1):
        mark = "[green]✓[/green]" if row.acknowledged else ""
        style = "bold red" if row.highlighted else None
        table.add_row(
            str(idx),
            row.issue.sequence_number,
            row.issue.location,
            row.issue.description,
            mark,
            style=style,
        )
    return table


def _parse_toggle(answer: str, size: int) -> List[int]:
    positions: List[int] = []
    for token in answer.replace(",", " ").split():
        if not token.isdigit() or not 1 <= int(token) <= size:
            raise ValueError(f"row must be a number between 1 and {size}: {token!r}")
        positions.append(int(token) - 1)
    return positions


@app.command("analyze")
def analyze(
    path: Optional[Path] = typer.Argument(None, help="File containing the ad copy."),
    text: Optional[str] = typer.Option(None, "--text", help="Ad copy given inline."),
    urls: List[str] = typer.Option(
        [], "--url", help="Official product page (repeat up to five times)."
    ),
    title: Optional[str] = typer.Option(None, help="Title stored with the report."),
    save: bool = typer.Option(True, "--save/--no-save", help="Store in the history."),
    user_email: Optional[str] = typer.Option(None, "--user", help="Reviewer email."),
):
    """Run the configured backend over the copy and print the report."""
    documents = _read_text(path, text)
    try:
        request = AnalysisRequest(documents=documents, official_urls=urls, title=title)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    provider = build_provider(get_settings())
    rprint(f"[cyan]Analyzing with the {provider.name} backend...[/cyan]")
    result = run_analysis(provider, request.documents, request.official_urls)
    if result.fallback:
        rprint("[yellow]The backend failed; showing a fallback report.[/yellow]")

    rprint(result.raw_output)
    rprint(f"[bold]Score: {result.score:.0f}/100[/bold]")
    if not save:
        return
    record = _history().save(
        ReportRecord(
            title=request.title or request.documents.strip().splitlines()[0][:50],
            score=result.score,
            summary=result.summary,
            issues=result.issues,
            raw_output=result.raw_output,
            user_email=user_email,
        )
    )
    rprint(f"[green]Saved as {record.id} ({record.ai_issue_count} issues)[/green]")


@app.command("issues")
def issues(
    path: Optional[Path] = typer.Argument(None, help="Markdown report to read."),
    record_id: Optional[str] = typer.Option(None, "--id", help="History record id."),
):
    """List the issue rows extracted from a report."""
    if record_id:
        report_text = _load_record(record_id).raw_output
    else:
        report_text = _read_text(path, None)
    session = ReviewSession()
    session.load(report_text)
    rows = session.render()
    if not rows:
        rprint("No checklist items were found in this report.")
        return
    rprint(_issue_table(rows))
    rprint(f"[bold]{len(rows)} issues[/bold]")


@app.command("history")
def history(
    search: str = typer.Option("", help="Match title or record id."),
    score_range: str = typer.Option("", help="80-100, 60-79 or 0-59."),
    date_range: str = typer.Option("", help="today, week, month or quarter."),
    stats: bool = typer.Option(False, "--stats", help="Print summary statistics."),
):
    """Show saved reports, newest first."""
    records = _history().list()
    try:
        shown = filter_records(
            records,
            HistoryFilters(search=search, score_range=score_range, date_range=date_range),
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    table = Table("ID", "Created", "Title", "Score", "AI", "Human", "Rating")
    for record in shown:
        table.add_row(
            record.id or "",
            f"{record.created_at:%Y-%m-%d %H:%M}",
            record.title,
            f"{record.score:.0f}",
            str(record.ai_issue_count),
            "" if record.human_issue_count is None else str(record.human_issue_count),
            record.user_rating.value if record.user_rating else "",
        )
    rprint(table)
    if stats:
        rprint(history_stats(shown))


@app.command("review")
def review(record_id: str = typer.Argument(..., help="History record id.")):
    """
    Walk the checklist for a saved report, then rate it.

    Rows are toggled by their position in the table. The rating prompt only
    appears once every row has been checked.
    """
    record = _load_record(record_id)
    session = ReviewSession()
    session.load(record.raw_output)

    while True:
        rows = session.render()
        if rows:
            rprint(_issue_table(rows))
            rprint(f"{session.acknowledged_count()} / {session.total_count} checked")
            answer = typer.prompt(
                "Rows to toggle (e.g. '1 3'), 'all', or 'done'", default="done"
            ).strip().lower()
            if answer == "all":
                for row in rows:
                    session.toggle(row.key, True)
                continue
            if answer != "done":
                try:
                    positions = _parse_toggle(answer, len(rows))
                except ValueError as exc:
                    rprint(f"[red]{exc}[/red]")
                    continue
                for pos in positions:
                    session.toggle(rows[pos].key, not rows[pos].acknowledged)
                continue

        outcome = session.complete()
        if isinstance(outcome, Empty):
            rprint(outcome.message)
            return
        if isinstance(outcome, Complete):
            rprint(f"[green]{outcome.message}[/green]")
            break
        rprint(f"[yellow]{outcome.message}[/yellow]")

    while True:
        try:
            grade = parse_rating(typer.prompt("Rating (A-E)"))
            break
        except ValueError as exc:
            rprint(f"[red]{exc}[/red]")
    count = typer.prompt("How many issues did you find?", default="0")
    submission = FeedbackRecorder(_history()).submit_rating(record, grade, count)
    if submission.warning:
        rprint(f"[yellow]{submission.warning}[/yellow]")
    rprint(
        f"AI issues: {submission.ai_issue_count}  "
        f"Human issues: {submission.record.human_issue_count}  "
        f"Difference: {submission.difference}"
    )


@app.command("analytics")
def analytics(
    kind: Optional[str] = typer.Option(
        None, "--type", help=f"One of: {', '.join(ANALYTICS_TYPES)}."
    ),
):
    """Print admin analytics as JSON."""
    if kind is not None and kind not in ANALYTICS_TYPES:
        raise typer.BadParameter(f"--type must be one of: {', '.join(ANALYTICS_TYPES)}")
    root = get_settings().resolved_data_dir()
    data = all_analytics(JsonlHistoryStore(root).list(), LoginHistoryStore(root).list())
    if kind:
        data = {kind: data[kind]}
    typer.echo(json.dumps(data, ensure_ascii=False, indent=2))


@app.command("export")
def export(
    record_id: str = typer.Argument(..., help="History record id."),
    out: Path = typer.Option(Path("review.docx"), "--out", help="DOCX file to write."),
):
    """Write a saved report and its issue table to a DOCX file."""
    record = _load_record(record_id)
    try:
        path = write_report_docx(record, out)
    except (OSError, AdReviewError) as exc:
        rprint(f"[red]Export failed: {exc}[/red]")
        raise typer.Exit(code=1) from exc
    rprint(f"[green]Wrote {path}[/green]")


@admin_app.command("list")
def admin_list():
    """Show users seen in the history and their admin status."""
    users = user_directory(_history().list(), _admins().list())
    if not users:
        rprint("No users yet.")
        return
    table = Table("Email", "Name", "Reports", "Last activity", "Admin")
    for user in users:
        table.add_row(
            user["email"],
            user["name"] or "",
            str(user["report_count"]),
            (user["last_activity"] or "")[:16].replace("T", " "),
            "yes" if user["is_admin"] else "",
        )
    rprint(table)


@admin_app.command("grant")
def admin_grant(email: str = typer.Argument(..., help="User email.")):
    """Give a user admin rights."""
    entry = _admins().set_admin(email, True)
    rprint(f"[green]{entry.user_email} is now an admin.[/green]")


@admin_app.command("revoke")
def admin_revoke(email: str = typer.Argument(..., help="User email.")):
    """Take admin rights away from a user."""
    store = _admins()
    entry = store.set_admin(email, False)
    if store.is_admin(entry.user_email):
        rprint(f"[yellow]{entry.user_email} stays an admin through ADMIN_EMAILS.[/yellow]")
        return
    rprint(f"[green]{entry.user_email} is no longer an admin.[/green]")


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", help="Bind address."),
    port: int = typer.Option(8000, help="Port to listen on."),
    reload: bool = typer.Option(False, help="Reload on code changes."),
):
    """Run the HTTP service."""
    import uvicorn

    uvicorn.run("ad_review.server:app", host=host, port=port, reload=reload)


def main():
    app()


if __name__ == "__main__":
    main()
