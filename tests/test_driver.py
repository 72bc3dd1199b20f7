from __future__ import annotations

import http.client
import io
import json
from urllib import error, request

import pytest

from doubles import USER, FakeRuntime, MANUAL_TRIGGER, manual_workflow, webhook_workflow
from taskchain_api.app import driver as driver_module
from taskchain_api.app.config import Settings
from taskchain_api.app.driver import ExecutionDriver, build_execution_request
from taskchain_api.app.errors import ExecutionFailedError, ExecutionTimeoutError
from taskchain_api.app.models import WorkflowDefinition, WorkflowNode
from taskchain_api.app.payloads import EmptyPayload, JsonPayload
from taskchain_api.app.triggers import ManualEntry, WebhookEntry, resolve_entry


class _FakeHTTPResponse:
    def __init__(self, body: bytes, content_type: str) -> None:
        self._raw_body = body
        self.headers = {"Content-Type": content_type}

    def read(self) -> bytes:
        return self._raw_body

    def __enter__(self) -> _FakeHTTPResponse:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        _ = (exc_type, exc, tb)
        return False


def _webhook_call(
    settings: Settings,
    monkeypatch: pytest.MonkeyPatch,
    response: object,
    *,
    method: str = "POST",
    payload: JsonPayload | EmptyPayload | None = None,
) -> tuple[dict[str, object] | None, dict[str, object]]:
    captured: dict[str, object] = {}

    def fake_urlopen(req: request.Request, timeout: float):
        captured["method"] = req.get_method()
        captured["data"] = req.data
        if isinstance(response, Exception):
            raise response
        return response

    monkeypatch.setattr(driver_module.request, "urlopen", fake_urlopen)
    workflow = webhook_workflow("wf-hook", method=method)
    entry = resolve_entry(workflow)
    assert isinstance(entry, WebhookEntry)
    driver = ExecutionDriver(runtime=FakeRuntime(), settings=settings)
    result = driver.run_webhook(
        workflow=workflow,
        entry=entry,
        payload=payload or JsonPayload(value={"prompt": "hi"}),
    )
    return result, captured


def test_get_webhook_sends_no_body(settings: Settings, monkeypatch: pytest.MonkeyPatch) -> None:
    result, captured = _webhook_call(
        settings,
        monkeypatch,
        _FakeHTTPResponse(b'{"ok": true}', "application/json; charset=utf-8"),
        method="GET",
    )
    assert result == {"ok": True}
    assert captured == {"method": "GET", "data": None}


def test_webhook_non_object_json_is_wrapped(settings: Settings, monkeypatch: pytest.MonkeyPatch) -> None:
    result, _ = _webhook_call(
        settings, monkeypatch, _FakeHTTPResponse(json.dumps([1, 2]).encode(), "application/json")
    )
    assert result == {"response": [1, 2]}


def test_webhook_text_body_is_wrapped(settings: Settings, monkeypatch: pytest.MonkeyPatch) -> None:
    result, _ = _webhook_call(
        settings, monkeypatch, _FakeHTTPResponse(b"Workflow was started", "text/html")
    )
    assert result == {"response": "Workflow was started"}


def test_webhook_empty_json_body_is_no_output(settings: Settings, monkeypatch: pytest.MonkeyPatch) -> None:
    result, _ = _webhook_call(settings, monkeypatch, _FakeHTTPResponse(b"", "application/json"))
    assert result is None


def test_webhook_http_error_is_execution_failure(
    settings: Settings, monkeypatch: pytest.MonkeyPatch
) -> None:
    http_error = error.HTTPError(
        "http://hooks.test/webhook/price-lookup", 404, "Not Found", {}, io.BytesIO(b"")
    )
    with pytest.raises(ExecutionFailedError, match="Webhook returned 404: Not Found"):
        _webhook_call(settings, monkeypatch, http_error)


def test_webhook_transport_error_is_execution_failure(
    settings: Settings, monkeypatch: pytest.MonkeyPatch
) -> None:
    with pytest.raises(ExecutionFailedError, match="Webhook request failed: connection refused"):
        _webhook_call(settings, monkeypatch, error.URLError("connection refused"))


def test_webhook_timeout_is_execution_failure(
    settings: Settings, monkeypatch: pytest.MonkeyPatch
) -> None:
    with pytest.raises(ExecutionFailedError, match="timed out"):
        _webhook_call(settings, monkeypatch, TimeoutError("read timed out"))


def test_build_execution_request_seeds_trigger() -> None:
    workflow = manual_workflow("wf", "Set")
    execution_request = build_execution_request(
        workflow, ManualEntry(node=MANUAL_TRIGGER), JsonPayload(value={"prompt": "hi"})
    )
    body = execution_request.model_dump(mode="json", by_alias=True, exclude_none=True)

    assert body["triggerToStartFrom"]["name"] == MANUAL_TRIGGER.name
    assert body["triggerToStartFrom"]["data"]["data"]["main"] == [[{"json": {"prompt": "hi"}}]]
    assert body["triggerToStartFrom"]["data"]["source"] == [None]
    assert body["startNodes"] == [{"name": MANUAL_TRIGGER.name}]
    assert body["runData"] == {}
    assert body["destinationNode"] == MANUAL_TRIGGER.name


def test_build_execution_request_without_trigger_leaves_start_to_runtime() -> None:
    workflow = WorkflowDefinition(id="wf", nodes=[WorkflowNode(name="Set", type="n8n-nodes-base.set")])
    execution_request = build_execution_request(
        workflow, ManualEntry(node=None), JsonPayload(value={"prompt": "hi"})
    )
    assert execution_request.trigger_to_start_from is None
    assert execution_request.start_nodes is None
    assert execution_request.destination_node is None


def test_run_manual_requires_execution_id(settings: Settings) -> None:
    class NoIdRuntime(FakeRuntime):
        def execute_manually(self, execution_request, user):
            return None

    driver = ExecutionDriver(runtime=NoIdRuntime(), settings=settings)
    with pytest.raises(ExecutionFailedError, match='Failed to start execution for workflow "wf"'):
        driver.run_manual(
            workflow=manual_workflow("wf"),
            entry=ManualEntry(node=MANUAL_TRIGGER),
            payload=EmptyPayload(),
            user=USER,
        )


def test_run_manual_requires_run_data(settings: Settings) -> None:
    driver = ExecutionDriver(runtime=FakeRuntime({"wf": None}), settings=settings)
    with pytest.raises(ExecutionFailedError, match='Execution "exec-1" did not return any data'):
        driver.run_manual(
            workflow=manual_workflow("wf"),
            entry=ManualEntry(node=MANUAL_TRIGGER),
            payload=EmptyPayload(),
            user=USER,
        )


def test_stop_failure_after_timeout_is_not_fatal(settings: Settings) -> None:
    class UnstoppableRuntime(FakeRuntime):
        def stop_execution(self, execution_id: str) -> None:
            raise RuntimeError("stop endpoint unavailable")

    driver = ExecutionDriver(
        runtime=UnstoppableRuntime(hang=True),
        settings=settings.model_copy(update={"execution_timeout_s": 0.1}),
        cancel_check_interval_s=0.05,
    )
    with pytest.raises(ExecutionTimeoutError):
        driver.run_manual(
            workflow=manual_workflow("wf"),
            entry=ManualEntry(node=MANUAL_TRIGGER),
            payload=EmptyPayload(),
            user=USER,
        )


@pytest.mark.parametrize(
    "transport_error",
    [
        http.client.RemoteDisconnected("Remote end closed connection without response"),
        ConnectionResetError("connection reset by peer"),
    ],
)
def test_webhook_dropped_connection_is_execution_failure(
    settings: Settings, monkeypatch: pytest.MonkeyPatch, transport_error: Exception
) -> None:
    with pytest.raises(ExecutionFailedError, match="Webhook request failed: "):
        _webhook_call(settings, monkeypatch, transport_error)
