"""Data models for the compliance review desk."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, computed_field, field_validator

from .report_parser import count_issues

MAX_OFFICIAL_URLS = 5


def _assume_utc(value: datetime) -> datetime:
    """Naive timestamps are stored as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Rating(str, Enum):
    """Reviewer's grade for the AI report, A (best) to E (worst)."""

    A = "A"
    B = "B"
    C = "C"
    D = "D"
    E = "E"


class CurrentUser(BaseModel):
    """Identity attached to saved records; supplied by the hosting app."""

    email: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None


class AnalysisRequest(BaseModel):
    documents: str = Field(..., description="Advertising copy to check.")
    official_urls: List[str] = Field(
        default_factory=list,
        description="Up to five official product pages used as references.",
    )
    title: Optional[str] = None

    @field_validator("documents")
    @classmethod
    def _documents_required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("documents (the copy to check) is required.")
        return value

    @field_validator("official_urls")
    @classmethod
    def _trim_urls(cls, value: List[str]) -> List[str]:
        urls = [url.strip() for url in value if url and url.strip()]
        if len(urls) > MAX_OFFICIAL_URLS:
            raise ValueError(f"at most {MAX_OFFICIAL_URLS} official URLs are supported.")
        return urls


class AnalysisResult(BaseModel):
    """Normalized output of an analysis backend."""

    status: str = "completed"
    score: float
    raw_output: str = Field(..., description="Markdown report fed to the issue extractor.")
    summary: str = ""
    issues: List[Dict[str, Any]] = Field(default_factory=list)
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    fallback: bool = Field(
        False, description="True when the report was synthesized after a backend failure."
    )


class ReportRecord(BaseModel):
    """One saved analysis in the review history."""

    id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    title: str
    score: float
    summary: str = ""
    issues: List[Dict[str, Any]] = Field(default_factory=list)
    raw_output: str = ""
    user_email: Optional[str] = None
    user_name: Optional[str] = None
    user_rating: Optional[Rating] = None
    human_issue_count: Optional[int] = Field(None, ge=0)

    @field_validator("created_at")
    @classmethod
    def _created_at_utc(cls, value: datetime) -> datetime:
        return _assume_utc(value)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def ai_issue_count(self) -> int:
        return count_issues(self.raw_output)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def issue_difference(self) -> Optional[int]:
        if self.human_issue_count is None:
            return None
        return abs(self.ai_issue_count - self.human_issue_count)

    def storage_dict(self) -> Dict[str, Any]:
        """Fields persisted to the store (derived counts excluded)."""
        return self.model_dump(
            mode="json", exclude={"ai_issue_count", "issue_difference"}
        )


class LoginEvent(BaseModel):
    user_email: str
    user_name: Optional[str] = None
    login_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("login_at")
    @classmethod
    def _login_at_utc(cls, value: datetime) -> datetime:
        return _assume_utc(value)


class AdminUser(BaseModel):
    user_email: str
    is_admin: bool = True
