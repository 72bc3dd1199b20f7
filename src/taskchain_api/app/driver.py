"""Execution driver: run one workflow to completion and classify the outcome.

Two strategies, selected by the workflow's entry point:
- manual: submit to the runtime seeded at the trigger node, then wait.
- webhook: call the workflow's public webhook URL and read the response body.
"""

from __future__ import annotations

import http.client
import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError
from dataclasses import dataclass
from typing import Any
from urllib import error, request

from .config import Settings
from .errors import ChainCancelledError, ExecutionFailedError, ExecutionTimeoutError
from .models import (
    ExecutionRequest,
    NodeRun,
    RunResult,
    StartNode,
    TriggerToStartFrom,
    User,
    WorkflowDefinition,
)
from .payloads import JsonPayload, Payload, to_execution_items
from .platform import WorkflowRuntime
from .triggers import ManualEntry, WebhookEntry

logger = logging.getLogger(__name__)

WEBHOOK_EXECUTION_ID = "webhook-execution"


@dataclass(frozen=True)
class ManualOutcome:
    execution_id: str
    run: RunResult


def build_execution_request(
    workflow: WorkflowDefinition,
    entry: ManualEntry,
    payload: Payload,
) -> ExecutionRequest:
    """Manual-run request that starts at the entry node without waiting on a trigger."""
    execution_request = ExecutionRequest(workflow_data=workflow)
    if entry.node is None:
        return execution_request

    seed_items = to_execution_items(payload)
    if seed_items:
        execution_request.trigger_to_start_from = TriggerToStartFrom(
            name=entry.node.name,
            data=NodeRun(
                start_time=int(time.time() * 1000),
                execution_time=0,
                execution_index=0,
                execution_status="success",
                source=[None],
                data={"main": [seed_items]},
            ),
        )
    execution_request.start_nodes = [StartNode(name=entry.node.name, source_data=None)]
    # Empty run data plus a destination keeps the runtime from waiting on a webhook.
    execution_request.run_data = {}
    execution_request.destination_node = entry.node.name
    return execution_request


class ExecutionDriver:
    def __init__(
        self,
        *,
        runtime: WorkflowRuntime,
        settings: Settings,
        cancel_check_interval_s: float = 0.25,
    ) -> None:
        self.runtime = runtime
        self.execution_timeout_s = settings.execution_timeout_s
        self.webhook_base_url = settings.resolved_webhook_base_url()
        self.webhook_timeout_s = settings.webhook_timeout_s
        self.cancel_check_interval_s = cancel_check_interval_s

    def run_manual(
        self,
        *,
        workflow: WorkflowDefinition,
        entry: ManualEntry,
        payload: Payload,
        user: User,
        cancel_event: threading.Event | None = None,
    ) -> ManualOutcome:
        execution_request = build_execution_request(workflow, entry, payload)
        logger.debug(
            "driver event=submit workflow_id=%s entry_node=%s seeded=%s",
            workflow.id,
            entry.node.name if entry.node else None,
            execution_request.trigger_to_start_from is not None,
        )
        execution_id = self.runtime.execute_manually(execution_request, user)
        if not execution_id:
            raise ExecutionFailedError(f'Failed to start execution for workflow "{workflow.id}"')

        logger.info(
            "driver event=waiting workflow_id=%s execution_id=%s timeout_s=%.1f",
            workflow.id,
            execution_id,
            self.execution_timeout_s,
        )
        run = self._wait_for_completion(execution_id, cancel_event=cancel_event)
        if run is None:
            raise ExecutionFailedError(f'Execution "{execution_id}" did not return any data')
        if run.error is not None:
            logger.error(
                "driver event=run_failed workflow_id=%s execution_id=%s node=%s error=%s",
                workflow.id,
                execution_id,
                (run.error.node or {}).get("name"),
                run.error.message,
            )
            raise ExecutionFailedError(
                f"Workflow execution failed: {run.error.message or 'Unknown error'}"
            )
        logger.info(
            "driver event=completed workflow_id=%s execution_id=%s status=%s executed_nodes=%d",
            workflow.id,
            execution_id,
            run.status,
            len(run.run_data),
        )
        return ManualOutcome(execution_id=execution_id, run=run)

    def run_webhook(
        self,
        *,
        workflow: WorkflowDefinition,
        entry: WebhookEntry,
        payload: Payload,
    ) -> dict[str, Any] | None:
        url = f"{self.webhook_base_url}/webhook/{entry.path}"
        data = None
        if isinstance(payload, JsonPayload) and entry.method != "GET":
            data = json.dumps(payload.value).encode("utf-8")
        req = request.Request(
            url=url,
            data=data,
            method=entry.method,
            headers={"Content-Type": "application/json"},
        )
        logger.info(
            "driver event=webhook_call workflow_id=%s method=%s url=%s has_body=%s",
            workflow.id,
            entry.method,
            url,
            data is not None,
        )
        try:
            with request.urlopen(req, timeout=self.webhook_timeout_s) as response:
                body = response.read().decode("utf-8", errors="replace")
                content_type = response.headers.get("Content-Type") or ""
        except error.HTTPError as exc:
            raise ExecutionFailedError(f"Webhook returned {exc.code}: {exc.reason}") from exc
        except error.URLError as exc:
            raise ExecutionFailedError(f"Webhook request failed: {exc.reason}") from exc
        except TimeoutError as exc:
            raise ExecutionFailedError(
                f"Webhook request timed out after {self.webhook_timeout_s:.1f}s"
            ) from exc
        except (OSError, http.client.HTTPException) as exc:
            raise ExecutionFailedError(f"Webhook request failed: {exc}") from exc
        return _parse_webhook_body(body, content_type=content_type)

    def _wait_for_completion(
        self,
        execution_id: str,
        *,
        cancel_event: threading.Event | None,
    ) -> RunResult | None:
        stop_polling = threading.Event()
        pool = ThreadPoolExecutor(max_workers=1)
        future = pool.submit(
            self.runtime.wait_for_completion, execution_id, cancel_event=stop_polling
        )
        deadline = time.monotonic() + self.execution_timeout_s
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._abandon(execution_id, stop_polling, reason="timeout")
                    raise ExecutionTimeoutError(
                        f'Execution "{execution_id}" did not finish within '
                        f"{self.execution_timeout_s:.1f}s"
                    )
                try:
                    return future.result(timeout=min(remaining, self.cancel_check_interval_s))
                except TimeoutError:
                    if cancel_event is not None and cancel_event.is_set():
                        self._abandon(execution_id, stop_polling, reason="cancelled")
                        raise ChainCancelledError(
                            f'Execution "{execution_id}" was cancelled'
                        ) from None
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def _abandon(self, execution_id: str, stop_polling: threading.Event, *, reason: str) -> None:
        stop_polling.set()
        logger.warning("driver event=abandon execution_id=%s reason=%s", execution_id, reason)
        try:
            self.runtime.stop_execution(execution_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "driver event=stop_failed execution_id=%s reason=%s", execution_id, exc
            )


def _parse_webhook_body(body: str, *, content_type: str) -> dict[str, Any] | None:
    if "application/json" in content_type.lower():
        if not body.strip():
            return None
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError:
            return {"response": body}
        if isinstance(parsed, dict):
            return parsed
        return {"response": parsed}
    return {"response": body}
