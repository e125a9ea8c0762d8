"""Analysis backends that turn advertising copy into a markdown compliance report.

Three providers share one call shape, ``analyze(documents, official_urls)``:

- ``DifyAnalysisProvider`` runs the hosted Dify workflow over HTTP.
- ``OpenAIAnalysisProvider`` asks a Responses-API model for the same report.
- ``MockAnalysisProvider`` answers offline when nothing is configured.

``run_analysis`` wraps any provider so callers always get a well-formed
report back: backend failures and timeouts become a synthetic fallback
report that the issue extractor reads as zero issues.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import httpx
from openai import OpenAI

from .config import Settings, get_settings
from .errors import AnalysisProviderError, AnalysisTimeoutError, ConfigurationError
from .models import MAX_OFFICIAL_URLS, AnalysisResult

LOGGER = logging.getLogger(__name__)

PROMPTS_DIR = Path(__file__).resolve().parent / "prompts"
DEFAULT_SCORE = 75.0
RAW_OUTPUT_KEYS = ("answer", "text", "result", "output", "raw_output")
_SCORE_LINE = re.compile(r"(?:スコア|score)\s*[:：]\s*(\d{1,3}(?:\.\d+)?)", re.IGNORECASE)


class AnalysisProvider(Protocol):
    name: str

    def analyze(self, documents: str, official_urls: List[str]) -> AnalysisResult: ...


def _coerce_score(value: Any) -> float:
    if isinstance(value, bool):
        return DEFAULT_SCORE
    if isinstance(value, (int, float)):
        return float(value)
    return DEFAULT_SCORE


def _score_from_text(text: str) -> float:
    match = _SCORE_LINE.search(text or "")
    if not match:
        return DEFAULT_SCORE
    return min(100.0, float(match.group(1)))


def _summary_from_text(text: str) -> str:
    """First paragraph under a 総評/Summary heading, if the report has one."""
    lines = (text or "").splitlines()
    for idx, line in enumerate(lines):
        heading = line.strip().lstrip("#").strip()
        if heading in {"総評", "Summary"}:
            body: List[str] = []
            for follow in lines[idx + 1 :]:
                stripped = follow.strip()
                if stripped.startswith("#") or stripped.startswith("|"):
                    break
                if not stripped:
                    if body:
                        break
                    continue
                body.append(stripped)
            return " ".join(body)
    return ""


# --- Dify ---------------------------------------------------------------


def build_workflow_inputs(documents: str, official_urls: List[str]) -> Dict[str, str]:
    """Workflow inputs; URL slots are sent only when filled."""
    inputs: Dict[str, str] = {"documents": documents}
    for idx, url in enumerate(official_urls[:MAX_OFFICIAL_URLS], start=1):
        if url and url.strip():
            inputs[f"official_url{idx}"] = url.strip()
    return inputs


def parse_workflow_response(payload: Dict[str, Any]) -> AnalysisResult:
    """Normalize a blocking ``/workflows/run`` response."""
    data = payload.get("data") or {}
    status = data.get("status")
    if status and status != "succeeded":
        raise AnalysisProviderError(
            f"Dify workflow {status}: {data.get('error') or 'no error detail'}"
        )
    outputs: Any = data.get("outputs")
    if outputs is None:
        raise AnalysisProviderError("Dify workflow response missing outputs.")
    if isinstance(outputs, str):
        try:
            outputs = json.loads(outputs)
        except json.JSONDecodeError:
            return AnalysisResult(
                score=_score_from_text(outputs),
                raw_output=outputs,
                summary=_summary_from_text(outputs),
                conversation_id=payload.get("workflow_run_id"),
                message_id=payload.get("task_id"),
            )
    if not isinstance(outputs, dict):
        outputs = {"result": outputs}

    raw_output = next(
        (outputs[key] for key in RAW_OUTPUT_KEYS if isinstance(outputs.get(key), str)),
        None,
    )
    if raw_output is None:
        raw_output = json.dumps(outputs, ensure_ascii=False, indent=2)
    score = outputs.get("score")
    issues = outputs.get("issues")
    return AnalysisResult(
        score=_coerce_score(score) if score is not None else _score_from_text(raw_output),
        raw_output=raw_output,
        summary=str(outputs.get("summary") or _summary_from_text(raw_output)),
        issues=issues if isinstance(issues, list) else [],
        conversation_id=payload.get("workflow_run_id"),
        message_id=payload.get("task_id"),
    )


class DifyAnalysisProvider:
    name = "dify"

    def __init__(
        self,
        api_url: str,
        api_key: str,
        *,
        user: str = "ad-review",
        timeout: float = 900.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not api_url or not api_key:
            raise ConfigurationError("DIFY_API_URL and DIFY_API_KEY must both be set.")
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.user = user
        self.timeout = timeout
        self._client = client

    def _post(self, body: Dict[str, Any]) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        url = f"{self.api_url}/workflows/run"
        if self._client is not None:
            return self._client.post(url, json=body, headers=headers, timeout=self.timeout)
        with httpx.Client(timeout=self.timeout) as client:
            return client.post(url, json=body, headers=headers)

    def analyze(self, documents: str, official_urls: List[str]) -> AnalysisResult:
        inputs = build_workflow_inputs(documents, official_urls)
        LOGGER.info("Calling Dify workflow with inputs: %s", sorted(inputs))
        body = {"inputs": inputs, "response_mode": "blocking", "user": self.user}
        try:
            response = self._post(body)
        except httpx.TimeoutException as exc:
            raise AnalysisTimeoutError(
                f"Dify workflow timed out after {self.timeout:.0f}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise AnalysisProviderError(f"Dify workflow request failed: {exc}") from exc

        if response.status_code >= 400:
            try:
                detail = response.json().get("message") or response.text
            except ValueError:
                detail = response.text
            raise AnalysisProviderError(
                f"Dify workflow error: {response.status_code} - {detail}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise AnalysisProviderError("Dify workflow returned non-JSON body.") from exc
        return parse_workflow_response(payload)


# --- OpenAI -------------------------------------------------------------


def _response_text_or_raise(response: object) -> str:
    text = getattr(response, "output_text", None)
    if isinstance(text, str) and text.strip():
        return text
    status = getattr(response, "status", None)
    if status == "incomplete":
        details = getattr(response, "incomplete_details", None)
        reason = getattr(details, "reason", None) if details else None
        raise AnalysisProviderError(f"Report response incomplete (reason={reason}).")
    err = getattr(response, "error", None)
    if err:
        raise AnalysisProviderError(f"Report response error: {err}")
    raise AnalysisProviderError("Report response missing output text.")


class OpenAIAnalysisProvider:
    name = "openai"

    def __init__(
        self,
        client: OpenAI,
        *,
        model: str,
        max_tokens: int = 0,
        prompt_name: str = "compliance_review.txt",
    ) -> None:
        self.client = client
        self.model = model
        self.max_tokens = max_tokens
        self.prompt_name = prompt_name

    def analyze(self, documents: str, official_urls: List[str]) -> AnalysisResult:
        prompt_text = (PROMPTS_DIR / self.prompt_name).read_text(encoding="utf-8")
        url_lines = "\n".join(f"- {url}" for url in official_urls) or "- (none)"
        user_message = f"公式URL:\n{url_lines}\n\n広告原稿:\n{documents}"
        request_kwargs: Dict[str, Any] = {
            "model": self.model,
            "input": [
                {"role": "system", "content": prompt_text},
                {"role": "user", "content": user_message},
            ],
        }
        if self.max_tokens and self.max_tokens > 0:
            request_kwargs["max_output_tokens"] = self.max_tokens
        try:
            response = self.client.responses.create(**request_kwargs)
        except Exception as exc:
            raise AnalysisProviderError(f"OpenAI request failed: {exc}") from exc
        text = _response_text_or_raise(response)
        return AnalysisResult(
            score=_score_from_text(text),
            raw_output=text,
            summary=_summary_from_text(text),
            message_id=getattr(response, "id", None),
        )


# --- Offline -----------------------------------------------------------


class MockAnalysisProvider:
    """Test-mode answer used when no backend is configured."""

    name = "mock"

    def analyze(self, documents: str, official_urls: List[str]) -> AnalysisResult:
        raw_output = (
            "スコア: 75\n\n"
            "## 総評\n"
            "分析APIが未設定のため、テストモードで実行しています。\n\n"
            "## 指摘事項\n\n"
            "| No. | 指摘箇所 | 指摘内容 |\n"
            "|-----|----------|----------|\n"
            "| 1 | システム | 実際の分析を行うには DIFY_API_URL / DIFY_API_KEY を設定してください |\n"
        )
        return AnalysisResult(
            score=DEFAULT_SCORE,
            raw_output=raw_output,
            summary="テストモードでの分析結果です。",
            issues=[
                {
                    "type": "warning",
                    "message": "Analysis backend not configured; running in test mode.",
                    "section": "system",
                }
            ],
            conversation_id="test-conversation",
            message_id="test-message",
        )


def build_provider(settings: Optional[Settings] = None) -> AnalysisProvider:
    """Pick the configured backend; 'auto' prefers Dify, then OpenAI, then mock."""
    settings = settings or get_settings()
    backend = settings.analysis_backend.lower()
    if backend not in {"auto", "dify", "openai", "mock"}:
        raise ConfigurationError(f"unknown ANALYSIS_BACKEND: {settings.analysis_backend}")

    if backend == "dify" or (
        backend == "auto" and settings.dify_api_url and settings.dify_api_key
    ):
        return DifyAnalysisProvider(
            settings.dify_api_url or "",
            settings.dify_api_key or "",
            user=settings.dify_user,
            timeout=settings.analysis_timeout_seconds,
        )
    if backend == "openai" or (backend == "auto" and settings.openai_api_key):
        if not settings.openai_api_key:
            raise ConfigurationError("OPENAI_API_KEY is required for the openai backend.")
        client = OpenAI(
            api_key=settings.openai_api_key, timeout=settings.analysis_timeout_seconds
        )
        return OpenAIAnalysisProvider(
            client, model=settings.analysis_model, max_tokens=settings.max_tokens
        )
    LOGGER.warning("No analysis backend configured; using the offline mock.")
    return MockAnalysisProvider()


# --- Orchestration -----------------------------------------------------


def _failure_message(exc: Exception) -> tuple[str, float]:
    text = str(exc)
    if isinstance(exc, AnalysisTimeoutError):
        return "The analysis backend timed out.", 70.0
    if "App unavailable" in text:
        return "The Dify app is unavailable. Check the app configuration.", 60.0
    if "invalid_param" in text or " 400 " in f" {text} ":
        return f"The analysis workflow rejected its inputs: {text}", 60.0
    return "Could not reach the analysis backend.", 65.0


def fallback_result(documents: str, exc: Exception) -> AnalysisResult:
    """Synthetic report returned when the backend fails; contains no issue table."""
    message, score = _failure_message(exc)
    excerpt = documents[:200] + ("..." if len(documents) > 200 else "")
    raw_output = (
        "System error report\n\n"
        f"[Error]\n{message}\n\n"
        f"[Technical detail]\n{exc}\n\n"
        "[Fallback result]\n"
        "- Basic compliance check only\n"
        f"- Score: {score:.0f}/100\n"
        "- Recommendation: have a specialist review the copy\n\n"
        "[What to do]\n"
        "1. Check the network connection\n"
        "2. Wait a while and try again\n"
        "3. Contact an administrator if the problem continues\n\n"
        f"Analysed text (first 200 characters):\n{excerpt}"
    )
    return AnalysisResult(
        status="completed",
        score=score,
        raw_output=raw_output,
        summary="A system error occurred, so only a simplified analysis was run.",
        issues=[
            {"type": "error", "message": message, "section": "system"},
            {
                "type": "warning",
                "message": "A specialist review is recommended.",
                "section": "recommendation",
            },
        ],
        conversation_id="system-generated",
        message_id="system-generated",
        fallback=True,
    )


def run_analysis(
    provider: AnalysisProvider, documents: str, official_urls: List[str]
) -> AnalysisResult:
    """Call ``provider``; degrade to a fallback report instead of raising."""
    started = datetime.now(timezone.utc)
    try:
        result = provider.analyze(documents, official_urls)
    except (AnalysisProviderError, ConfigurationError) as exc:
        LOGGER.error("Analysis via %s failed: %s", provider.name, exc)
        return fallback_result(documents, exc)
    elapsed = (datetime.now(timezone.utc) - started).total_seconds()
    LOGGER.info(
        "Analysis via %s finished in %.1fs (score=%.0f)", provider.name, elapsed, result.score
    )
    return result
