"""Configuration helpers for the compliance review desk."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", populate_by_name=True
    )

    analysis_backend: str = Field(
        "auto",
        alias="ANALYSIS_BACKEND",
        description=(
            "Which analysis backend to call: 'dify', 'openai', 'mock', or 'auto' "
            "(Dify when configured, then OpenAI, otherwise the offline mock)."
        ),
    )
    dify_api_url: str | None = Field(None, alias="DIFY_API_URL")
    dify_api_key: str | None = Field(None, alias="DIFY_API_KEY")
    dify_user: str = Field(
        "ad-review", description="User label sent with each Dify workflow run."
    )
    openai_api_key: str | None = Field(None, alias="OPENAI_API_KEY")
    analysis_model: str = Field(
        "gpt-4.1", description="Model used when the OpenAI backend writes the report."
    )
    max_tokens: int = Field(
        4000,
        description="Max output tokens for the OpenAI report; 0 removes the cap.",
    )
    analysis_timeout_seconds: float = Field(
        900.0,
        description=(
            "Seconds to wait for the analysis backend before falling back to a "
            "synthetic report. Workflows routinely take several minutes."
        ),
    )
    data_dir: str | None = Field(
        None,
        alias="DATA_DIR",
        description="Root for history/admin/login JSONL files; defaults to data/review.",
    )
    admin_emails: str = Field(
        "",
        alias="ADMIN_EMAILS",
        description="Comma-separated emails that are always treated as admins.",
    )
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    def bootstrap_admins(self) -> set[str]:
        return {
            item.strip().lower() for item in self.admin_emails.split(",") if item.strip()
        }

    def resolved_data_dir(self) -> Path:
        if self.data_dir:
            return Path(self.data_dir).expanduser().resolve()
        return Path.cwd() / "data" / "review"


def get_settings() -> Settings:
    """Return a settings instance reflecting the current environment."""
    return Settings()
