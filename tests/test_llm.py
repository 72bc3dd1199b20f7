from __future__ import annotations

import json
from urllib import error, request

import pytest
from pydantic import BaseModel

from doubles import FakeLLM
from taskchain_api.app import llm as llm_module
from taskchain_api.app.config import Settings
from taskchain_api.app.errors import AIResponseParseError, LLMNotConfiguredError
from taskchain_api.app.llm import (
    ChatCompletionsAdapter,
    build_llm_adapter,
    generate_structured,
    parse_json_response,
    require_llm,
    strip_code_fences,
)


class _FakeHTTPResponse:
    def __init__(self, payload: object | None = None, *, lines: list[bytes] | None = None) -> None:
        self._raw_body = json.dumps(payload).encode("utf-8") if payload is not None else b""
        self._lines = lines or []

    def read(self) -> bytes:
        return self._raw_body

    def __iter__(self):
        return iter(self._lines)

    def __enter__(self) -> _FakeHTTPResponse:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        _ = (exc_type, exc, tb)
        return False


def _completion(content: str) -> dict[str, object]:
    return {"choices": [{"message": {"content": content}}]}


def test_strip_code_fences() -> None:
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences('```\n{"a": 1}```') == '{"a": 1}'


@pytest.mark.parametrize(
    "content",
    [
        '{"tasks": []}',
        '```json\n{"tasks": []}\n```',
        'Here is the plan:\n```JSON\n{"tasks": []}\n```\nLet me know!',
        'Sure! {"tasks": []} Hope that helps.',
    ],
)
def test_parse_json_response_recovers_object(content: str) -> None:
    assert parse_json_response(content) == {"tasks": []}


@pytest.mark.parametrize("content", ["", "not json at all", "[1, 2, 3]", "{broken"])
def test_parse_json_response_rejects_non_objects(content: str) -> None:
    with pytest.raises(AIResponseParseError, match="Unable to parse AI response as JSON"):
        parse_json_response(content)


def test_generate_structured_validates_response_model() -> None:
    class Verdict(BaseModel):
        label: str
        score: float

    llm = FakeLLM(['```json\n{"label": "ok", "score": 0.9}\n```', '{"label": "ok"}'])

    verdict = generate_structured(
        llm, system_prompt="judge", user_prompt="text", response_model=Verdict
    )
    assert verdict == Verdict(label="ok", score=0.9)
    assert llm.calls[0]["json_mode"] is True
    assert llm.calls[0]["messages"][0] == {"role": "system", "content": "judge"}

    with pytest.raises(AIResponseParseError, match="Verdict"):
        generate_structured(llm, system_prompt="judge", user_prompt="text", response_model=Verdict)


def test_complete_posts_openrouter_request(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def fake_urlopen(req: request.Request, timeout: float):
        captured["url"] = req.full_url
        captured["auth"] = req.get_header("Authorization")
        captured["body"] = json.loads(req.data.decode("utf-8"))
        captured["timeout"] = timeout
        return _FakeHTTPResponse(_completion("hello"))

    monkeypatch.setattr(llm_module.request, "urlopen", fake_urlopen)
    adapter = ChatCompletionsAdapter(api_key="sk-test", base_url="https://llm.test/api/v1/", timeout_s=7.0)

    content = adapter.complete(messages=[{"role": "user", "content": "hi"}], json_mode=True)

    assert content == "hello"
    assert captured["url"] == "https://llm.test/api/v1/chat/completions"
    assert captured["auth"] == "Bearer sk-test"
    assert captured["timeout"] == 7.0
    assert captured["body"] == {
        "model": "google/gemini-2.5-flash",
        "messages": [{"role": "user", "content": "hi"}],
        "response_format": {"type": "json_object"},
    }


def test_complete_retries_transport_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    attempts: list[int] = []

    def flaky_urlopen(req: request.Request, timeout: float):
        attempts.append(1)
        if len(attempts) == 1:
            raise error.URLError("temporary failure")
        return _FakeHTTPResponse(_completion("recovered"))

    monkeypatch.setattr(llm_module.request, "urlopen", flaky_urlopen)
    adapter = ChatCompletionsAdapter(api_key="sk-test", max_retries=1, backoff_s=0.0)

    assert adapter.complete(messages=[{"role": "user", "content": "hi"}]) == "recovered"
    assert len(attempts) == 2


def test_complete_surfaces_api_error_after_retries(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        llm_module.request,
        "urlopen",
        lambda req, timeout: _FakeHTTPResponse({"error": {"message": "quota exceeded"}}),
    )
    adapter = ChatCompletionsAdapter(api_key="sk-test", max_retries=0)

    with pytest.raises(ValueError, match="quota exceeded"):
        adapter.complete(messages=[{"role": "user", "content": "hi"}])


def test_stream_yields_sse_deltas(monkeypatch: pytest.MonkeyPatch) -> None:
    lines = [
        b": OPENROUTER PROCESSING\n",
        b'data: {"choices": [{"delta": {"content": "Hel"}}]}\n',
        b"\n",
        b"data: not-json\n",
        b'data: {"choices": [{"delta": {"content": "lo"}}]}\n',
        b'data: {"choices": [{"delta": {}}]}\n',
        b"data: [DONE]\n",
        b'data: {"choices": [{"delta": {"content": "ignored"}}]}\n',
    ]
    captured: dict[str, object] = {}

    def fake_urlopen(req: request.Request, timeout: float):
        captured["body"] = json.loads(req.data.decode("utf-8"))
        return _FakeHTTPResponse(lines=lines)

    monkeypatch.setattr(llm_module.request, "urlopen", fake_urlopen)
    adapter = ChatCompletionsAdapter(api_key="sk-test")

    chunks = list(adapter.stream(messages=[{"role": "user", "content": "hi"}]))

    assert chunks == ["Hel", "lo"]
    assert captured["body"]["stream"] is True


def test_build_llm_adapter_requires_key(monkeypatch: pytest.MonkeyPatch) -> None:
    assert build_llm_adapter(Settings(llm_api_key="")) is None

    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-env")
    adapter = build_llm_adapter(Settings(llm_api_key="", llm_model="openai/gpt-4o-mini"))
    assert isinstance(adapter, ChatCompletionsAdapter)
    assert adapter.api_key == "sk-env"
    assert adapter.model == "openai/gpt-4o-mini"


def test_require_llm() -> None:
    llm = FakeLLM()
    assert require_llm(llm) is llm
    with pytest.raises(LLMNotConfiguredError):
        require_llm(None)
