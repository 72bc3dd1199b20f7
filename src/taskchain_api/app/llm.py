from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Iterator
from typing import Any, Protocol, TypeVar
from urllib import error, request

from pydantic import BaseModel, ValidationError

from .config import Settings
from .errors import AIResponseParseError, LLMNotConfiguredError

TModel = TypeVar("TModel", bound=BaseModel)
logger = logging.getLogger(__name__)

Message = dict[str, str]

_FENCE_PATTERN = re.compile(r"```(?:json|JSON)?[ \t]*\n?")


class LLMAdapter(Protocol):
    """Interface for text completions over a chat-style message list."""

    def complete(
        self,
        *,
        messages: list[Message],
        timeout_s: float | None = None,
        json_mode: bool = False,
    ) -> str: ...

    def stream(
        self,
        *,
        messages: list[Message],
        timeout_s: float | None = None,
    ) -> Iterator[str]: ...


def strip_code_fences(content: str) -> str:
    return _FENCE_PATTERN.sub("", content).replace("```", "").strip()


def parse_json_response(content: str) -> dict[str, Any]:
    """Parse a model reply that should be a JSON object.

    Tries the raw text, then the text without markdown fences, then the outermost
    `{...}` span. The model is never asked again.
    """
    candidates = [content.strip(), strip_code_fences(content)]
    cleaned = candidates[-1]
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if 0 <= start < end:
        candidates.append(cleaned[start : end + 1])
    for candidate in candidates:
        if not candidate:
            continue
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    logger.error("llm event=parse_failed content_preview=%r", content[:200])
    raise AIResponseParseError(
        "Unable to parse AI response as JSON. The AI may not have returned valid JSON."
    )


def generate_structured(
    llm_adapter: LLMAdapter,
    *,
    system_prompt: str,
    user_prompt: str,
    response_model: type[TModel],
    timeout_s: float | None = None,
) -> TModel:
    content = llm_adapter.complete(
        messages=[
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
        timeout_s=timeout_s,
        json_mode=True,
    )
    parsed = parse_json_response(content)
    try:
        return response_model.model_validate(parsed)
    except ValidationError as exc:
        raise AIResponseParseError(
            f"Unable to parse AI response into {response_model.__name__}: {exc.error_count()} errors"
        ) from exc


class ChatCompletionsAdapter:
    """Small adapter for OpenAI-compatible chat completions (OpenRouter by default)."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "google/gemini-2.5-flash",
        base_url: str = "https://openrouter.ai/api/v1",
        timeout_s: float = 60.0,
        max_retries: int = 1,
        backoff_s: float = 0.2,
        app_title: str = "taskchain-api",
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)
        self.app_title = app_title

    def complete(
        self,
        *,
        messages: list[Message],
        timeout_s: float | None = None,
        json_mode: bool = False,
    ) -> str:
        payload: dict[str, Any] = {"model": self.model, "messages": messages}
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        response_json = self._request_with_retry(payload, timeout_s=timeout_s or self.timeout_s)
        return self._extract_content(response_json)

    def stream(
        self,
        *,
        messages: list[Message],
        timeout_s: float | None = None,
    ) -> Iterator[str]:
        payload = {"model": self.model, "messages": messages, "stream": True}
        req = self._build_request(payload)
        try:
            response = request.urlopen(req, timeout=timeout_s or self.timeout_s)
        except error.HTTPError as exc:
            raw_error = exc.read().decode("utf-8", errors="replace")
            raise RuntimeError(f"LLM chat failed: {exc.code} {exc.reason}: {raw_error}") from exc
        with response:
            for raw_line in response:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line.startswith("data: "):
                    continue
                data = line[len("data: ") :]
                if data == "[DONE]":
                    return
                try:
                    parsed = json.loads(data)
                except json.JSONDecodeError:
                    logger.debug("llm event=stream_skip_invalid_json line=%r", data[:80])
                    continue
                choices = parsed.get("choices") or [{}]
                delta = choices[0].get("delta") or {}
                content = delta.get("content")
                if isinstance(content, str) and content:
                    yield content

    def _request_with_retry(self, payload: dict[str, Any], timeout_s: float) -> dict[str, Any]:
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._request(payload, timeout_s=timeout_s)
            except (TimeoutError, ValueError, error.URLError, error.HTTPError) as exc:
                last_error = exc
                logger.warning(
                    "LLM request failed attempt=%d/%d model=%s reason=%s",
                    attempt + 1,
                    self.max_retries + 1,
                    self.model,
                    exc,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s)
        if last_error is None:
            raise RuntimeError("LLM request failed with unknown error")
        raise last_error

    def _build_request(self, payload: dict[str, Any]) -> request.Request:
        return request.Request(
            url=f"{self.base_url}/chat/completions",
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
                "X-Title": self.app_title,
            },
        )

    def _request(self, payload: dict[str, Any], timeout_s: float) -> dict[str, Any]:
        req = self._build_request(payload)
        try:
            with request.urlopen(req, timeout=timeout_s) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raw_error = exc.read().decode("utf-8", errors="replace")
            raise error.HTTPError(
                exc.url,
                exc.code,
                f"LLM API request failed: {raw_error}",
                exc.headers,
                exc.fp,
            ) from exc
        response_json = json.loads(body)
        api_error = response_json.get("error") if isinstance(response_json, dict) else None
        if isinstance(api_error, dict):
            raise ValueError(f"LLM API error: {api_error.get('message', 'unknown error')}")
        return response_json

    @staticmethod
    def _extract_content(response_json: dict[str, Any]) -> str:
        choices = response_json.get("choices", [])
        if not choices:
            raise ValueError("LLM response did not contain choices")

        message = choices[0].get("message", {})
        content = message.get("content", "")
        if isinstance(content, str) and content:
            return content
        if isinstance(content, list):
            text_segments: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        text_segments.append(text)
            merged = "".join(text_segments).strip()
            if merged:
                return merged
        raise ValueError("LLM response content could not be parsed as text")


def build_llm_adapter(settings: Settings) -> LLMAdapter | None:
    api_key = settings.resolved_llm_api_key()
    if not api_key:
        return None
    return ChatCompletionsAdapter(
        api_key=api_key,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        timeout_s=settings.llm_timeout_s,
        max_retries=settings.llm_max_retries,
        backoff_s=settings.llm_backoff_s,
        app_title=settings.app_name,
    )


def require_llm(llm_adapter: LLMAdapter | None) -> LLMAdapter:
    if llm_adapter is None:
        raise LLMNotConfiguredError(
            "LLM is not configured. Set TASKCHAIN_LLM_API_KEY or OPENROUTER_API_KEY."
        )
    return llm_adapter
