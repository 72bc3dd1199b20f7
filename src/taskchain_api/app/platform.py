"""Workflow platform boundary: catalog lookups and the execution runtime.

The chain coordinator only depends on the two Protocols below. PlatformApiClient
implements both over the platform's REST API.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Protocol
from urllib import error, parse, request

from .config import Settings
from .errors import PlatformRequestError
from .models import (
    ExecutionRequest,
    RunError,
    RunResult,
    User,
    WorkflowDefinition,
    WorkflowDescriptionRecord,
)

logger = logging.getLogger(__name__)

EXECUTE_PERMISSION = "workflow:execute"
READ_PERMISSION = "workflow:read"
TERMINAL_EXECUTION_STATUSES = {"success", "error", "crashed", "canceled"}


class WorkflowCatalog(Protocol):
    def find_workflow_for_user(
        self,
        workflow_id: str,
        user: User,
        required_permissions: list[str],
    ) -> WorkflowDefinition | None: ...

    def get_workflow_descriptions(self, user: User) -> list[WorkflowDescriptionRecord]: ...


class WorkflowRuntime(Protocol):
    def execute_manually(self, execution_request: ExecutionRequest, user: User) -> str | None:
        """Submit a run and return its execution id."""
        ...

    def wait_for_completion(
        self,
        execution_id: str,
        *,
        cancel_event: threading.Event | None = None,
    ) -> RunResult | None:
        """Block until the execution finishes; None if it produced no data."""
        ...

    def stop_execution(self, execution_id: str) -> None: ...


def run_result_from_execution(payload: dict[str, Any], *, execution_id: str) -> RunResult:
    """Build a RunResult from the platform's execution JSON (`data.resultData`)."""
    data = payload.get("data") or {}
    result_data = data.get("resultData") or {}
    raw_error = result_data.get("error")
    return RunResult(
        execution_id=execution_id,
        finished=bool(payload.get("finished", False)),
        status=payload.get("status"),
        run_data=result_data.get("runData") or {},
        last_node_executed=result_data.get("lastNodeExecuted"),
        error=RunError.model_validate(raw_error) if isinstance(raw_error, dict) else None,
    )


class PlatformApiClient:
    """HTTP client for the workflow platform (catalog + runtime)."""

    def __init__(self, settings: Settings) -> None:
        self.base_url = settings.platform_base_url.rstrip("/")
        self.api_key = settings.platform_api_key
        self.timeout_s = settings.platform_timeout_s
        self.poll_interval_s = settings.execution_poll_interval_s

    def find_workflow_for_user(
        self,
        workflow_id: str,
        user: User,
        required_permissions: list[str],
    ) -> WorkflowDefinition | None:
        try:
            payload = self._request_json(
                "GET",
                f"/api/v1/workflows/{parse.quote(workflow_id, safe='')}",
                user=user,
                params={"scopes": ",".join(required_permissions)},
            )
        except PlatformRequestError as exc:
            if exc.status_code in (403, 404):
                return None
            raise
        if not isinstance(payload, dict):
            return None
        return WorkflowDefinition.model_validate(payload)

    def get_workflow_descriptions(self, user: User) -> list[WorkflowDescriptionRecord]:
        records: list[WorkflowDescriptionRecord] = []
        cursor: str | None = None
        while True:
            payload = self._request_json(
                "GET",
                "/api/v1/workflows",
                user=user,
                params={"limit": 250, "cursor": cursor},
            )
            rows = payload.get("data", []) if isinstance(payload, dict) else []
            for row in rows:
                if not isinstance(row, dict) or "id" not in row:
                    continue
                description = row.get("workflowDescription")
                records.append(
                    WorkflowDescriptionRecord(
                        workflow_id=str(row["id"]),
                        workflow_description=description if isinstance(description, dict) else None,
                    )
                )
            cursor = payload.get("nextCursor") if isinstance(payload, dict) else None
            if not cursor:
                return records

    def execute_manually(self, execution_request: ExecutionRequest, user: User) -> str | None:
        workflow_id = execution_request.workflow_data.id
        payload = self._request_json(
            "POST",
            f"/rest/workflows/{parse.quote(workflow_id, safe='')}/run",
            user=user,
            body=execution_request.model_dump(mode="json", by_alias=True, exclude_none=True),
        )
        data = payload.get("data", payload) if isinstance(payload, dict) else {}
        execution_id = data.get("executionId") if isinstance(data, dict) else None
        return str(execution_id) if execution_id else None

    def wait_for_completion(
        self,
        execution_id: str,
        *,
        cancel_event: threading.Event | None = None,
    ) -> RunResult | None:
        path = f"/api/v1/executions/{parse.quote(execution_id, safe='')}"
        while True:
            if cancel_event is not None and cancel_event.is_set():
                return None
            payload = self._request_json("GET", path, params={"includeData": "true"})
            if not isinstance(payload, dict):
                return None
            status = str(payload.get("status") or "")
            if payload.get("finished") or status in TERMINAL_EXECUTION_STATUSES:
                return run_result_from_execution(payload, execution_id=execution_id)
            if cancel_event is not None:
                cancel_event.wait(self.poll_interval_s)
            else:
                time.sleep(self.poll_interval_s)

    def stop_execution(self, execution_id: str) -> None:
        self._request_json("POST", f"/rest/executions/{parse.quote(execution_id, safe='')}/stop")

    def _request_json(
        self,
        method: str,
        path: str,
        *,
        user: User | None = None,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        if params:
            encoded = parse.urlencode({key: value for key, value in params.items() if value is not None})
            if encoded:
                url = f"{url}?{encoded}"
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-N8N-API-KEY"] = self.api_key
        if user is not None:
            headers["X-User-Id"] = user.id
        data = None
        if body is not None:
            headers["Content-Type"] = "application/json"
            data = json.dumps(body).encode("utf-8")
        req = request.Request(url=url, data=data, method=method, headers=headers)

        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                raw_body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise PlatformRequestError(
                f"Platform request {method} {path} failed with status {exc.code}: {detail[:300]}",
                status_code=exc.code,
            ) from exc
        except error.URLError as exc:
            raise PlatformRequestError(f"Platform request {method} {path} failed: {exc.reason}") from exc

        if not raw_body:
            return {}
        try:
            return json.loads(raw_body)
        except json.JSONDecodeError as exc:
            raise PlatformRequestError(f"Platform returned non-JSON response for {path}.") from exc
