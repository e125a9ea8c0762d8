"""FastAPI service for analysis, review history, the checklist, and feedback."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response

from .analysis import build_provider, run_analysis
from .analytics import (
    ANALYTICS_TYPES,
    HistoryFilters,
    all_analytics,
    filter_records,
    history_stats,
    user_directory,
)
from .checklist import (
    ChecklistRow,
    Complete,
    Empty,
    ReconciliationOutcome,
    ReviewSession,
    SessionRegistry,
)
from .config import get_settings
from .docx_export import report_docx_bytes
from .errors import (
    ChecklistStateError,
    ConfigurationError,
    HistoryStoreError,
    RecordNotFoundError,
)
from .feedback import FeedbackRecorder
from .history import AdminStore, JsonlHistoryStore, LoginHistoryStore
from .logging_setup import configure_logging
from .models import AnalysisRequest, CurrentUser, LoginEvent, ReportRecord
from .reviewer import render_review_page
from .schema import validate_history_payload

LOGGER = logging.getLogger(__name__)

DOCX_MEDIA_TYPE = (
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
)

SESSIONS = SessionRegistry()


@asynccontextmanager
async def _lifespan(_: FastAPI):
    configure_logging(get_settings().log_level)
    yield


app = FastAPI(title="Ad Compliance Review", lifespan=_lifespan)


def _add_cors(app: FastAPI) -> None:
    """Allow the dashboard front end to call the API from another origin."""
    allow_all = os.getenv("CORS_ALLOW_ALL", "true").lower() == "true"
    origins_env = os.getenv("CORS_ALLOW_ORIGINS", "")
    origins = [o.strip() for o in origins_env.split(",") if o.strip()]
    allow_credentials = (
        os.getenv("CORS_ALLOW_CREDENTIALS", "true").lower() == "true"
    )
    if allow_all or not origins:
        origins = ["*"]
    if origins == ["*"] and allow_credentials:
        # Starlette/FastAPI disallow wildcard origins when credentials are enabled.
        allow_credentials = False
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )


_add_cors(app)


# --- Stores and identity ---------------------------------------------------


def history_store() -> JsonlHistoryStore:
    return JsonlHistoryStore(get_settings().resolved_data_dir())


def admin_store() -> AdminStore:
    settings = get_settings()
    return AdminStore(settings.resolved_data_dir(), bootstrap=settings.bootstrap_admins())


def login_store() -> LoginHistoryStore:
    return LoginHistoryStore(get_settings().resolved_data_dir())


def optional_user(
    x_user_email: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
    x_user_avatar: Optional[str] = Header(None),
) -> Optional[CurrentUser]:
    """Identity forwarded by the hosting app's sign-in layer."""
    if not x_user_email or not x_user_email.strip():
        return None
    return CurrentUser(
        email=x_user_email.strip(), name=x_user_name, avatar_url=x_user_avatar
    )


def require_user(user: Optional[CurrentUser] = Depends(optional_user)) -> CurrentUser:
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Sign in required (X-User-Email header missing).",
        )
    return user


def _load_record(record_id: str) -> ReportRecord:
    try:
        return history_store().get(record_id)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except HistoryStoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
        ) from exc


def _session(record: ReportRecord, user: CurrentUser) -> ReviewSession:
    return SESSIONS.session_for(user.email, record.id or "", record.raw_output)


def _list_records(user: Optional[CurrentUser]) -> List[ReportRecord]:
    try:
        records = history_store().list()
    except HistoryStoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
        ) from exc
    if user is None:
        return records
    email = user.email.lower()
    return [r for r in records if (r.user_email or "").lower() == email]


# --- Response bodies ---------------------------------------------------------


def _row_body(row: ChecklistRow) -> Dict[str, Any]:
    return {
        "key": row.key,
        "sequence_number": row.issue.sequence_number,
        "location": row.issue.location,
        "description": row.issue.description,
        "acknowledged": row.acknowledged,
        "highlighted": row.highlighted,
    }


def _checklist_body(session: ReviewSession) -> Dict[str, Any]:
    rows = session.render()
    return {
        "status": session.status.value,
        "content_hash": session.store.content_hash,
        "total_count": session.total_count,
        "acknowledged_count": session.acknowledged_count(),
        "rating_unlocked": session.rating_unlocked,
        "rows": [_row_body(row) for row in rows],
    }


def _outcome_name(outcome: ReconciliationOutcome) -> str:
    if isinstance(outcome, Empty):
        return "empty"
    if isinstance(outcome, Complete):
        return "complete"
    return "incomplete"


# --- Routes ------------------------------------------------------------------


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/api/analyze", status_code=status.HTTP_201_CREATED)
def analyze(
    payload: Dict[str, Any], user: CurrentUser = Depends(require_user)
) -> JSONResponse:
    """Run the configured backend and save the report to the caller's history."""
    try:
        request = AnalysisRequest(**payload)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)
        ) from exc

    settings = get_settings()
    try:
        provider = build_provider(settings)
    except ConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
        ) from exc

    result = run_analysis(provider, request.documents, request.official_urls)
    record = ReportRecord(
        title=request.title or request.documents.strip().splitlines()[0][:50],
        score=result.score,
        summary=result.summary,
        issues=result.issues,
        raw_output=result.raw_output,
        user_email=user.email,
        user_name=user.name,
    )
    try:
        record = history_store().save(record)
    except HistoryStoreError as exc:
        # The report is still returned; only the history entry is missing.
        LOGGER.error("Could not save analysis to history: %s", exc)

    body = {
        "status": result.status,
        "fallback": result.fallback,
        "conversation_id": result.conversation_id,
        "message_id": result.message_id,
        "record": record.model_dump(mode="json"),
    }
    return JSONResponse(status_code=status.HTTP_201_CREATED, content=body)


@app.get("/api/history")
def list_history(
    search: str = "",
    score_range: str = "",
    date_range: str = "",
    user: Optional[CurrentUser] = Depends(optional_user),
) -> List[Dict[str, Any]]:
    filters = HistoryFilters(search=search, score_range=score_range, date_range=date_range)
    try:
        records = filter_records(_list_records(user), filters)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)
        ) from exc
    return [record.model_dump(mode="json") for record in records]


@app.post("/api/history", status_code=status.HTTP_201_CREATED)
def save_history(
    payload: Dict[str, Any], user: Optional[CurrentUser] = Depends(optional_user)
) -> JSONResponse:
    data = dict(payload)
    if user is not None:
        data.setdefault("user_email", user.email)
        if user.name:
            data.setdefault("user_name", user.name)
    try:
        validated = validate_history_payload(data)
        record = ReportRecord(**validated)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)
        ) from exc
    try:
        stored = history_store().save(record)
    except HistoryStoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
        ) from exc
    return JSONResponse(
        status_code=status.HTTP_201_CREATED, content=stored.model_dump(mode="json")
    )


@app.get("/api/history-stats")
def get_history_stats(
    user: Optional[CurrentUser] = Depends(optional_user),
) -> Dict[str, Any]:
    return history_stats(_list_records(user))


@app.get("/api/history/{record_id}")
def get_history(record_id: str) -> Dict[str, Any]:
    return _load_record(record_id).model_dump(mode="json")


@app.get("/api/history/{record_id}/checklist")
def get_checklist(
    record_id: str, user: CurrentUser = Depends(require_user)
) -> Dict[str, Any]:
    record = _load_record(record_id)
    return _checklist_body(_session(record, user))


@app.post("/api/history/{record_id}/checklist/toggle")
def toggle_checklist(
    record_id: str,
    payload: Dict[str, Any],
    user: CurrentUser = Depends(require_user),
) -> Dict[str, Any]:
    record = _load_record(record_id)
    session = _session(record, user)
    key = str(payload.get("key") or "")
    if key not in {row.key for row in session.render()}:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown checklist key for this report: {key!r}",
        )
    acknowledged = payload.get("acknowledged", True)
    if not isinstance(acknowledged, bool):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="acknowledged must be true or false.",
        )
    try:
        session.toggle(key, acknowledged)
    except ChecklistStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _checklist_body(session)


@app.post("/api/history/{record_id}/checklist/complete")
def complete_checklist(
    record_id: str, user: CurrentUser = Depends(require_user)
) -> Dict[str, Any]:
    record = _load_record(record_id)
    session = _session(record, user)
    try:
        outcome = session.complete()
    except ChecklistStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    body = _checklist_body(session)
    body["outcome"] = _outcome_name(outcome)
    body["message"] = outcome.message
    return body


@app.post("/api/history/{record_id}/rating")
def submit_rating(
    record_id: str,
    payload: Dict[str, Any],
    user: CurrentUser = Depends(require_user),
) -> Dict[str, Any]:
    """Store the reviewer's grade; only reachable once the checklist is complete."""
    record = _load_record(record_id)
    session = _session(record, user)
    if not session.rating_unlocked:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Complete the checklist before rating this report.",
        )
    recorder = FeedbackRecorder(history_store())
    try:
        submission = recorder.submit_rating(
            record, payload.get("rating"), payload.get("human_issue_count")
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)
        ) from exc
    if submission.persisted:
        SESSIONS.discard(user.email, record.id or "")
    return {
        "persisted": submission.persisted,
        "warning": submission.warning,
        "ai_issue_count": submission.ai_issue_count,
        "difference": submission.difference,
        "record": submission.record.model_dump(mode="json"),
    }


@app.get("/api/history/{record_id}/export")
def export_history(
    record_id: str, user: Optional[CurrentUser] = Depends(optional_user)
) -> Response:
    record = _load_record(record_id)
    acknowledged = None
    if user is not None:
        session = _session(record, user)
        acknowledged = {row.key: row.acknowledged for row in session.render()}
    filename = f"review-{record.id}.docx"
    return Response(
        content=report_docx_bytes(record, acknowledged),
        media_type=DOCX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/admin/check")
def admin_check(user: CurrentUser = Depends(require_user)) -> Dict[str, Any]:
    return {"email": user.email, "is_admin": admin_store().is_admin(user.email)}


def require_admin(user: CurrentUser = Depends(require_user)) -> CurrentUser:
    if not admin_store().is_admin(user.email):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required."
        )
    return user


@app.get("/api/admin/users")
def list_users(_: CurrentUser = Depends(require_admin)) -> Dict[str, Any]:
    try:
        records = history_store().list()
    except HistoryStoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
        ) from exc
    return {"users": user_directory(records, admin_store().list())}


@app.post("/api/admin/users")
def update_user_role(
    payload: Dict[str, Any], user: CurrentUser = Depends(require_admin)
) -> Dict[str, Any]:
    """Grant or revoke admin rights; admins cannot revoke their own."""
    email = str(payload.get("user_email") or "").strip()
    is_admin = payload.get("is_admin")
    if not email:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="user_email is required."
        )
    if not isinstance(is_admin, bool):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="is_admin must be true or false.",
        )
    if not is_admin and email.lower() == user.email.lower():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You cannot revoke your own admin rights.",
        )
    store = admin_store()
    try:
        entry = store.set_admin(email, is_admin)
    except HistoryStoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
        ) from exc
    LOGGER.info("%s set admin=%s for %s", user.email, is_admin, entry.user_email)
    # Bootstrap admins from ADMIN_EMAILS stay admins whatever the table says.
    return {"user_email": entry.user_email, "is_admin": store.is_admin(entry.user_email)}


@app.get("/api/analytics")
def analytics(
    type_: Optional[str] = Query(None, alias="type"),
    _: CurrentUser = Depends(require_admin),
) -> Dict[str, Any]:
    if type_ is not None and type_ not in ANALYTICS_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"type must be one of: {', '.join(ANALYTICS_TYPES)}",
        )
    try:
        records = history_store().list()
        events = login_store().list()
    except HistoryStoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
        ) from exc
    data = all_analytics(records, events)
    return {type_: data[type_]} if type_ else data


@app.post("/api/login-history", status_code=status.HTTP_201_CREATED)
def record_login(user: CurrentUser = Depends(require_user)) -> JSONResponse:
    try:
        event = login_store().record(LoginEvent(user_email=user.email, user_name=user.name))
    except HistoryStoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
        ) from exc
    return JSONResponse(
        status_code=status.HTTP_201_CREATED, content=event.model_dump(mode="json")
    )


@app.get("/review/{record_id}", response_class=HTMLResponse)
def review_page(
    record_id: str, user: CurrentUser = Depends(require_user)
) -> HTMLResponse:
    record = _load_record(record_id)
    session = _session(record, user)
    return HTMLResponse(render_review_page(record=record, session=session, user=user))


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "ad_review.server:app",
        host=os.getenv("REVIEW_HOST", "0.0.0.0"),
        port=int(os.getenv("REVIEW_PORT", "8000")),
        reload=os.getenv("REVIEW_RELOAD", "false").lower() == "true",
    )
