"""Seed-data preparation for a task, gated by its resolved input type.

Every task that needs input gets it from a traceable source: the user's prompt
(first task only) or the previous task's typed output. A chain never runs a
workflow with empty data when data was expected.
"""

from __future__ import annotations

import logging

from .errors import DataContractError
from .extraction import extract_binary_item, extract_primary_json
from .models import NodeExecutionItem, TaskIoType
from .payloads import BinaryPayload, EmptyPayload, JsonPayload, Payload

logger = logging.getLogger(__name__)


def prepare_input(
    *,
    input_type: TaskIoType,
    task_index: int,
    user_prompt: str | None,
    previous_output: list[NodeExecutionItem] | None,
) -> Payload:
    if input_type in ("noInput", "noOutput"):
        return EmptyPayload()

    if input_type == "JSON":
        if previous_output:
            payload = extract_primary_json(previous_output)
            if payload is None:
                logger.error(
                    "prepare_input event=missing_json task_index=%d items=%d",
                    task_index,
                    len(previous_output),
                )
                raise DataContractError("Previous task did not return JSON data to pass forward")
            return JsonPayload(value=payload)

        if task_index == 0:
            if not user_prompt or not user_prompt.strip():
                raise DataContractError("User prompt is required for the first JSON-input workflow")
            return JsonPayload(value={"prompt": user_prompt})

        raise DataContractError("Unable to resolve JSON input payload for task")

    # png
    source = extract_binary_item(previous_output)
    if source is None or not source.binary:
        logger.error(
            "prepare_input event=missing_binary task_index=%d items=%d",
            task_index,
            len(previous_output or []),
        )
        raise DataContractError("Previous task did not return PNG/binary data")
    property_name, attachment = next(iter(source.binary.items()))
    return BinaryPayload(
        mime_type=attachment.mime_type,
        data=attachment.data,
        file_name=attachment.file_name,
        property_name=property_name,
        metadata=dict(source.json_data),
    )
