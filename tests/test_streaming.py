from __future__ import annotations

import json
import threading

from taskchain_api.app.models import (
    ChainProgressCursor,
    TaskChainResult,
    TaskExecutionResult,
    TaskProgress,
)
from taskchain_api.app.streaming import (
    build_final_record,
    progress_record,
    stream_chat_chunks,
    stream_task_chain,
)


def _progress(status: str, index: int, message: str) -> TaskProgress:
    return TaskProgress(
        status=status,
        current_task_index=index,
        total_tasks=2,
        workflow_id=f"wf-{index}",
        message=message,
    )


def _result(success: bool = True) -> TaskChainResult:
    task = TaskExecutionResult(
        index=0,
        workflow_id="wf-0",
        status="succeeded" if success else "failed",
        input_type="noInput",
        output_type="JSON",
        error=None if success else "boom",
    )
    return TaskChainResult(
        success=success,
        tasks=[task],
        progress=ChainProgressCursor(current_task_index=1 if success else 0, total_tasks=1),
        failed_task=None if success else task,
        error=None if success else "boom",
        final_output={"answer": 42} if success else None,
    )


def _decode(lines: list[str]) -> list[dict]:
    assert all(line.endswith("\n") for line in lines)
    return [json.loads(line) for line in lines]


def test_progress_record_uses_camel_case() -> None:
    record = progress_record(_progress("running", 1, "Starting task 2 of 2: Email"))
    assert record == {
        "status": "running",
        "currentTaskIndex": 1,
        "totalTasks": 2,
        "workflowId": "wf-1",
        "workflowName": None,
        "message": "Starting task 2 of 2: Email",
        "error": None,
    }


def test_final_record_carries_failed_task() -> None:
    record = build_final_record(_result(success=False))
    assert record["isFinal"] is True
    assert record["success"] is False
    assert record["executedTasks"] == 0
    assert record["failedTask"]["workflowId"] == "wf-0"
    assert record["failedTask"]["inputType"] == "noInput"
    assert record["tasks"][0]["taskSummary"] == ""
    assert "workflow_id" not in record["tasks"][0]
    assert record["error"] == "boom"


def test_stream_task_chain_yields_progress_then_final() -> None:
    def run_chain(progress_callback, cancel_event):
        progress_callback(_progress("running", 0, "Starting task 1 of 2: Research"))
        progress_callback(_progress("succeeded", 0, "Completed task 1 of 2"))
        return _result()

    records = _decode(list(stream_task_chain(run_chain)))

    assert [record.get("message") for record in records[:2]] == [
        "Starting task 1 of 2: Research",
        "Completed task 1 of 2",
    ]
    assert records[-1]["isFinal"] is True
    assert records[-1]["output"] == {"answer": 42}
    assert sum(1 for record in records if record.get("isFinal")) == 1


def test_stream_task_chain_turns_exception_into_final_error() -> None:
    def run_chain(progress_callback, cancel_event):
        raise RuntimeError("catalog unavailable")

    records = _decode(list(stream_task_chain(run_chain)))

    assert records == [
        {
            "isFinal": True,
            "success": False,
            "output": None,
            "summary": None,
            "error": "catalog unavailable",
            "executedTasks": 0,
            "failedTask": None,
            "tasks": [],
        }
    ]


def test_closing_stream_early_cancels_chain() -> None:
    cancelled = threading.Event()

    def run_chain(progress_callback, cancel_event):
        progress_callback(_progress("running", 0, "Starting task 1 of 2: Research"))
        if cancel_event.wait(5):
            cancelled.set()
        return _result()

    stream = stream_task_chain(run_chain)
    first = next(stream)
    stream.close()

    assert json.loads(first)["status"] == "running"
    assert cancelled.wait(5)


def test_stream_chat_chunks_reports_midstream_failure() -> None:
    def chunks():
        yield "Hel"
        yield "lo"
        raise ValueError("LLM API error: overloaded")

    records = _decode(list(stream_chat_chunks(chunks())))

    assert records == [
        {"chunk": "Hel"},
        {"chunk": "lo"},
        {"content": "LLM API error: overloaded", "isTaskList": False, "tasks": []},
    ]
