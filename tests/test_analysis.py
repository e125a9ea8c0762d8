import json
from types import SimpleNamespace

import httpx
import pytest

from ad_review.analysis import (
    DifyAnalysisProvider,
    MockAnalysisProvider,
    OpenAIAnalysisProvider,
    build_provider,
    build_workflow_inputs,
    fallback_result,
    parse_workflow_response,
    run_analysis,
)
from ad_review.config import Settings
from ad_review.errors import (
    AnalysisProviderError,
    AnalysisTimeoutError,
    ConfigurationError,
)
from ad_review.report_parser import count_issues


REPORT = (
    "スコア: 64\n\n"
    "## 総評\n"
    "断定表現が目立ちます。\n\n"
    "## 指摘事項\n\n"
    "| No. | 指摘箇所 | 指摘内容 | 修正案 |\n"
    "|---|---|---|---|\n"
    "| 1 | 見出し | 「必ず痩せる」 | 表現を緩和 |\n"
    "| 2 | 本文 | 効果保証 | 削除 |\n"
)


def settings(**values) -> Settings:
    base = {
        "ANALYSIS_BACKEND": "auto",
        "DIFY_API_URL": None,
        "DIFY_API_KEY": None,
        "OPENAI_API_KEY": None,
    }
    base.update(values)
    return Settings(_env_file=None, **base)


def dify_with(handler) -> DifyAnalysisProvider:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return DifyAnalysisProvider(
        "https://dify.example.com/v1/", "app-key", user="tester", client=client
    )


class FakeResponses:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        return self.response


def test_workflow_inputs_skip_blank_urls():
    inputs = build_workflow_inputs("copy", ["https://a.example", " ", "https://c.example"])

    assert inputs == {
        "documents": "copy",
        "official_url1": "https://a.example",
        "official_url3": "https://c.example",
    }


def test_dify_request_shape_and_result():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "workflow_run_id": "run-1",
                "task_id": "task-1",
                "data": {"status": "succeeded", "outputs": {"answer": REPORT, "score": 64}},
            },
        )

    result = dify_with(handler).analyze("広告原稿", ["https://brand.example"])

    assert seen["url"] == "https://dify.example.com/v1/workflows/run"
    assert seen["auth"] == "Bearer app-key"
    assert seen["body"] == {
        "inputs": {"documents": "広告原稿", "official_url1": "https://brand.example"},
        "response_mode": "blocking",
        "user": "tester",
    }
    assert result.score == 64
    assert result.raw_output == REPORT
    assert result.summary == "断定表現が目立ちます。"
    assert result.conversation_id == "run-1"
    assert count_issues(result.raw_output) == 2


def test_dify_string_outputs_are_parsed():
    payload = {"data": {"status": "succeeded", "outputs": json.dumps({"text": REPORT})}}

    result = parse_workflow_response(payload)

    assert result.raw_output == REPORT
    assert result.score == 64


def test_dify_outputs_without_text_are_dumped():
    payload = {"data": {"status": "succeeded", "outputs": {"score": 90, "items": [1]}}}

    result = parse_workflow_response(payload)

    assert result.score == 90
    assert json.loads(result.raw_output) == {"score": 90, "items": [1]}


def test_dify_failed_workflow_raises():
    with pytest.raises(AnalysisProviderError, match="failed"):
        parse_workflow_response({"data": {"status": "failed", "error": "boom"}})


def test_dify_http_error_raises():
    def handler(request):
        return httpx.Response(400, json={"message": "invalid_param"})

    with pytest.raises(AnalysisProviderError, match="400"):
        dify_with(handler).analyze("copy", [])


def test_dify_timeout_raises_timeout_error():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(AnalysisTimeoutError):
        dify_with(handler).analyze("copy", [])


def test_dify_requires_url_and_key():
    with pytest.raises(ConfigurationError):
        DifyAnalysisProvider("", "key")


def test_openai_provider_uses_prompt_and_reads_score():
    responses = FakeResponses(SimpleNamespace(output_text=REPORT, id="resp-1"))
    client = SimpleNamespace(responses=responses)
    provider = OpenAIAnalysisProvider(client, model="gpt-test", max_tokens=500)

    result = provider.analyze("原稿", ["https://brand.example"])

    call = responses.calls[0]
    assert call["model"] == "gpt-test"
    assert call["max_output_tokens"] == 500
    assert "指摘箇所" in call["input"][0]["content"]
    assert "https://brand.example" in call["input"][1]["content"]
    assert result.score == 64
    assert result.message_id == "resp-1"


def test_openai_provider_wraps_errors_and_empty_text():
    failing = SimpleNamespace(responses=FakeResponses(error=RuntimeError("network")))
    with pytest.raises(AnalysisProviderError, match="network"):
        OpenAIAnalysisProvider(failing, model="m").analyze("x", [])

    empty = SimpleNamespace(
        responses=FakeResponses(SimpleNamespace(output_text="", status="completed", error=None))
    )
    with pytest.raises(AnalysisProviderError, match="missing output"):
        OpenAIAnalysisProvider(empty, model="m").analyze("x", [])


def test_mock_provider_returns_one_issue():
    result = MockAnalysisProvider().analyze("copy", [])

    assert result.score == 75
    assert count_issues(result.raw_output) == 1


def test_run_analysis_falls_back_on_failure():
    def handler(request):
        raise httpx.ConnectError("down", request=request)

    result = run_analysis(dify_with(handler), "a" * 250, [])

    assert result.fallback is True
    assert result.conversation_id == "system-generated"
    assert count_issues(result.raw_output) == 0
    assert ("a" * 200 + "...") in result.raw_output


def test_fallback_score_depends_on_failure():
    assert fallback_result("x", AnalysisTimeoutError("t")).score == 70
    assert fallback_result("x", AnalysisProviderError("App unavailable")).score == 60
    assert fallback_result("x", AnalysisProviderError("other")).score == 65


def test_build_provider_selection():
    assert build_provider(settings()).name == "mock"
    assert build_provider(settings(ANALYSIS_BACKEND="mock", OPENAI_API_KEY="sk")).name == "mock"
    assert build_provider(settings(OPENAI_API_KEY="sk-test")).name == "openai"
    dify = build_provider(
        settings(DIFY_API_URL="https://dify.example/v1", DIFY_API_KEY="k", OPENAI_API_KEY="sk")
    )
    assert dify.name == "dify"


def test_build_provider_rejects_bad_config():
    with pytest.raises(ConfigurationError):
        build_provider(settings(ANALYSIS_BACKEND="bogus"))
    with pytest.raises(ConfigurationError):
        build_provider(settings(ANALYSIS_BACKEND="openai"))
    with pytest.raises(ConfigurationError):
        build_provider(settings(ANALYSIS_BACKEND="dify"))
