"""JSON-lines streaming for chat replies and task-chain progress.

Each record is one JSON object followed by STREAM_SEPARATOR. A task-chain stream
is zero or more progress records terminated by exactly one record carrying
`isFinal: true`.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
from collections.abc import Callable, Iterator
from typing import Any

from .models import TaskChainResult, TaskProgress

logger = logging.getLogger(__name__)

STREAM_SEPARATOR = "\n"
STREAM_MEDIA_TYPE = "application/json-lines"

ChainRunner = Callable[[Callable[[TaskProgress], None], threading.Event], TaskChainResult]

_DONE = object()


def encode_record(record: dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=False, default=str) + STREAM_SEPARATOR


def progress_record(progress: TaskProgress) -> dict[str, Any]:
    return {
        "status": progress.status,
        "currentTaskIndex": progress.current_task_index,
        "totalTasks": progress.total_tasks,
        "workflowId": progress.workflow_id,
        "workflowName": progress.workflow_name,
        "message": progress.message,
        "error": progress.error,
    }


def build_final_record(result: TaskChainResult) -> dict[str, Any]:
    failed_task = (
        result.failed_task.model_dump(mode="json", by_alias=True) if result.failed_task else None
    )
    return {
        "isFinal": True,
        "success": result.success,
        "output": result.final_output,
        "summary": result.summary,
        "error": result.error,
        "executedTasks": result.executed_tasks,
        "failedTask": failed_task,
        "tasks": [task.model_dump(mode="json", by_alias=True) for task in result.tasks],
    }


def error_final_record(message: str) -> dict[str, Any]:
    return {
        "isFinal": True,
        "success": False,
        "output": None,
        "summary": None,
        "error": message,
        "executedTasks": 0,
        "failedTask": None,
        "tasks": [],
    }


def stream_task_chain(run_chain: ChainRunner) -> Iterator[str]:
    """Run a chain on a worker thread and yield its progress as JSON lines.

    `run_chain(progress_callback, cancel_event)` runs the chain. Closing the
    generator early (client disconnect) sets the cancel event.
    """
    events: queue.Queue[object] = queue.Queue()
    cancel_event = threading.Event()
    outcome: dict[str, Any] = {}

    def worker() -> None:
        try:
            outcome["result"] = run_chain(events.put, cancel_event)
        except Exception as exc:  # noqa: BLE001
            logger.error("task_stream event=chain_error error=%s", exc, exc_info=True)
            outcome["error"] = exc
        finally:
            events.put(_DONE)

    thread = threading.Thread(target=worker, name="task-chain-stream", daemon=True)
    thread.start()
    try:
        while True:
            event = events.get()
            if event is _DONE:
                break
            if isinstance(event, TaskProgress):
                yield encode_record(progress_record(event))
        if "result" in outcome:
            yield encode_record(build_final_record(outcome["result"]))
        else:
            error = outcome.get("error")
            yield encode_record(error_final_record(str(error) if error else "Unknown error"))
    finally:
        if thread.is_alive():
            logger.warning("task_stream event=client_disconnected cancelling=true")
            cancel_event.set()


def stream_chat_chunks(chunks: Iterator[str]) -> Iterator[str]:
    """Wrap LLM text deltas as `{"chunk": ...}` records.

    A failure mid-stream becomes one final `{content, isTaskList, tasks}` record.
    """
    try:
        for chunk in chunks:
            yield encode_record({"chunk": chunk})
    except Exception as exc:  # noqa: BLE001
        logger.error("chat_stream event=failed error=%s", exc)
        yield encode_record(
            {"content": str(exc) or "An error occurred", "isTaskList": False, "tasks": []}
        )
