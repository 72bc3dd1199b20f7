"""Chain coordinator: run an ordered task list, threading each output forward.

Per task the status moves pending -> running -> succeeded | failed and never
back. The first failure stops the chain; later tasks stay pending. The caller
always gets a TaskChainResult, never an exception, for per-task failures.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol

from .driver import WEBHOOK_EXECUTION_ID, ExecutionDriver
from .errors import ChainCancelledError, InvalidTaskChainError, TaskChainError, WorkflowNotFoundError
from .extraction import OutputExtractor, extract_primary_json
from .inputs import prepare_input
from .io_types import normalize_io_type, resolve_input_type, resolve_output_type
from .models import (
    ChainProgressCursor,
    NodeExecutionItem,
    TaskChainResult,
    TaskExecutionResult,
    TaskPlanItem,
    TaskProgress,
    User,
    WorkflowDefinition,
    WorkflowDescriptionMetadata,
)
from .payloads import presentation
from .platform import EXECUTE_PERMISSION, WorkflowCatalog
from .triggers import WebhookEntry, resolve_entry

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[TaskProgress], None]

DEFAULT_SUMMARY = "All tasks completed successfully."


class TaskSummarizer(Protocol):
    def summarize_tasks(self, task_descriptions: list[str], user_prompt: str | None) -> str: ...


class TaskChainCoordinator:
    def __init__(
        self,
        *,
        catalog: WorkflowCatalog,
        driver: ExecutionDriver,
        extractor: OutputExtractor | None = None,
        summarizer: TaskSummarizer | None = None,
    ) -> None:
        self.catalog = catalog
        self.driver = driver
        self.extractor = extractor or OutputExtractor()
        self.summarizer = summarizer

    def run_task_chain(
        self,
        user: User,
        tasks: list[TaskPlanItem],
        user_prompt: str | None = None,
        progress_callback: ProgressCallback | None = None,
        cancel_event: threading.Event | None = None,
    ) -> TaskChainResult:
        if not tasks:
            logger.error("task_chain event=rejected reason=empty_task_list user_id=%s", user.id)
            raise InvalidTaskChainError("Tasks array is required and must not be empty")

        chain_started = time.perf_counter()
        logger.info(
            "task_chain event=start user_id=%s total_tasks=%d has_user_prompt=%s",
            user.id,
            len(tasks),
            bool(user_prompt),
        )

        descriptions = self._load_descriptions(user)
        results = [self._pending_result(index, task, descriptions) for index, task in enumerate(tasks)]

        previous_output: list[NodeExecutionItem] | None = None
        final_output = None

        for result in results:
            task_started = time.perf_counter()
            try:
                if cancel_event is not None and cancel_event.is_set():
                    raise ChainCancelledError("Task chain was cancelled before the task started")

                result.status = "running"
                result.started_at = datetime.now(UTC)
                self._emit(
                    progress_callback,
                    result,
                    len(results),
                    f"Starting task {result.index + 1} of {len(results)}: {result.task_summary}",
                )
                logger.info(
                    "task_run event=start task_index=%d workflow_id=%s input_type=%s output_type=%s",
                    result.index,
                    result.workflow_id,
                    result.input_type,
                    result.output_type,
                )

                payload = prepare_input(
                    input_type=result.input_type,
                    task_index=result.index,
                    user_prompt=user_prompt,
                    previous_output=previous_output,
                )
                result.input_payload = presentation(payload)

                workflow = self._load_workflow(result.workflow_id, user)
                if not result.workflow_name:
                    result.workflow_name = workflow.name or None
                entry = resolve_entry(workflow)

                if isinstance(entry, WebhookEntry):
                    response = self.driver.run_webhook(workflow=workflow, entry=entry, payload=payload)
                    result.execution_id = WEBHOOK_EXECUTION_ID
                    result.raw_output = [NodeExecutionItem(json_data=response)] if response else None
                    result.output_payload = response
                else:
                    outcome = self.driver.run_manual(
                        workflow=workflow,
                        entry=entry,
                        payload=payload,
                        user=user,
                        cancel_event=cancel_event,
                    )
                    result.execution_id = outcome.execution_id
                    result.raw_output = self.extractor.extract(outcome.run, workflow)
                    result.output_payload = extract_primary_json(result.raw_output)

                if result.output_type == "noOutput":
                    final_output = None
                    previous_output = None
                else:
                    final_output = result.output_payload
                    # Only the immediately preceding task may seed the next one.
                    previous_output = result.raw_output

                result.status = "succeeded"
                result.finished_at = datetime.now(UTC)
                logger.info(
                    "task_run event=succeeded task_index=%d workflow_id=%s execution_id=%s "
                    "duration_ms=%d has_output=%s",
                    result.index,
                    result.workflow_id,
                    result.execution_id,
                    int((time.perf_counter() - task_started) * 1000),
                    final_output is not None,
                )
                self._emit(
                    progress_callback,
                    result,
                    len(results),
                    f"Completed task {result.index + 1} of {len(results)}",
                )
            except Exception as exc:  # noqa: BLE001
                result.status = "failed"
                result.finished_at = datetime.now(UTC)
                result.error = str(exc) or exc.__class__.__name__
                logger.error(
                    "task_run event=failed task_index=%d workflow_id=%s duration_ms=%d "
                    "error_type=%s error=%s remaining_tasks=%d",
                    result.index,
                    result.workflow_id,
                    int((time.perf_counter() - task_started) * 1000),
                    exc.__class__.__name__,
                    result.error,
                    len(results) - result.index - 1,
                    exc_info=not isinstance(exc, TaskChainError),
                )
                self._emit(
                    progress_callback,
                    result,
                    len(results),
                    f"Task {result.index + 1} of {len(results)} failed",
                )
                logger.error(
                    "task_chain event=aborted total_tasks=%d executed_tasks=%d duration_ms=%d",
                    len(results),
                    result.index,
                    int((time.perf_counter() - chain_started) * 1000),
                )
                return TaskChainResult(
                    success=False,
                    tasks=results,
                    progress=ChainProgressCursor(
                        current_task_index=result.index,
                        total_tasks=len(results),
                        current_workflow_id=result.workflow_id,
                    ),
                    failed_task=result,
                    error=result.error,
                    final_output=final_output,
                )

        summary = None
        if results[-1].output_type == "noOutput":
            summary = self._summarize(results, user_prompt)

        logger.info(
            "task_chain event=completed total_tasks=%d duration_ms=%d has_final_output=%s",
            len(results),
            int((time.perf_counter() - chain_started) * 1000),
            final_output is not None,
        )
        return TaskChainResult(
            success=True,
            tasks=results,
            progress=ChainProgressCursor(current_task_index=len(results), total_tasks=len(results)),
            final_output=final_output,
            summary=summary,
        )

    def _load_descriptions(self, user: User) -> dict[str, WorkflowDescriptionMetadata]:
        descriptions: dict[str, WorkflowDescriptionMetadata] = {}
        for record in self.catalog.get_workflow_descriptions(user):
            raw = record.workflow_description
            if not raw:
                continue
            workflow_name = raw.get("workflowName")
            descriptions[record.workflow_id] = WorkflowDescriptionMetadata(
                input_type=normalize_io_type(raw.get("inputType")),
                output_type=normalize_io_type(raw.get("outputType")),
                workflow_name=workflow_name if isinstance(workflow_name, str) else None,
            )
        logger.debug("task_chain event=descriptions_loaded count=%d", len(descriptions))
        return descriptions

    @staticmethod
    def _pending_result(
        index: int,
        task: TaskPlanItem,
        descriptions: dict[str, WorkflowDescriptionMetadata],
    ) -> TaskExecutionResult:
        declared = descriptions.get(task.workflow_id) or WorkflowDescriptionMetadata()
        return TaskExecutionResult(
            index=index,
            workflow_id=task.workflow_id,
            workflow_name=declared.workflow_name,
            task_summary=task.task,
            input_type=resolve_input_type(task.input, declared.input_type),
            output_type=resolve_output_type(task.output, declared.output_type),
        )

    def _load_workflow(self, workflow_id: str, user: User) -> WorkflowDefinition:
        workflow = self.catalog.find_workflow_for_user(workflow_id, user, [EXECUTE_PERMISSION])
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        logger.debug(
            "task_run event=workflow_loaded workflow_id=%s name=%s nodes=%d active=%s",
            workflow.id,
            workflow.name,
            len(workflow.nodes),
            workflow.active,
        )
        return workflow

    def _summarize(self, results: list[TaskExecutionResult], user_prompt: str | None) -> str:
        if self.summarizer is None:
            return DEFAULT_SUMMARY
        try:
            summary = self.summarizer.summarize_tasks(
                [result.task_summary for result in results], user_prompt
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("task_chain event=summary_degraded reason=%s", exc)
            return DEFAULT_SUMMARY
        return summary.strip() or DEFAULT_SUMMARY

    @staticmethod
    def _emit(
        progress_callback: ProgressCallback | None,
        result: TaskExecutionResult,
        total_tasks: int,
        message: str,
    ) -> None:
        if progress_callback is None:
            return
        progress = TaskProgress(
            status=result.status,
            current_task_index=result.index,
            total_tasks=total_tasks,
            workflow_id=result.workflow_id,
            workflow_name=result.workflow_name,
            message=message,
            error=result.error,
        )
        try:
            progress_callback(progress)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "task_chain event=progress_callback_failed task_index=%d reason=%s",
                result.index,
                exc,
            )
