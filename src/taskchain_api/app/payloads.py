"""Tagged payload union passed between tasks.

A task's seed data is always one of three shapes, matching the task I/O types:
`JsonPayload` (JSON), `BinaryPayload` (png) or `EmptyPayload` (noInput).
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

from .models import BinaryData, NodeExecutionItem

DEFAULT_BINARY_PROPERTY = "data"


class JsonPayload(BaseModel):
    kind: Literal["json"] = "json"
    value: dict[str, Any]


class BinaryPayload(BaseModel):
    kind: Literal["binary"] = "binary"
    mime_type: str
    # Base64-encoded bytes, unchanged from the producing node.
    data: str
    file_name: str | None = None
    property_name: str = DEFAULT_BINARY_PROPERTY
    # JSON that travelled alongside the attachment.
    metadata: dict[str, Any] = Field(default_factory=dict)


class EmptyPayload(BaseModel):
    kind: Literal["empty"] = "empty"


Payload = Annotated[Union[JsonPayload, BinaryPayload, EmptyPayload], Field(discriminator="kind")]


def to_execution_items(payload: Payload) -> list[NodeExecutionItem] | None:
    """Render a payload as the runtime's node-execution-data items."""
    if isinstance(payload, JsonPayload):
        return [NodeExecutionItem(json_data=payload.value)]
    if isinstance(payload, BinaryPayload):
        attachment = BinaryData(
            data=payload.data,
            mime_type=payload.mime_type,
            file_name=payload.file_name,
        )
        return [
            NodeExecutionItem(
                json_data=dict(payload.metadata),
                binary={payload.property_name: attachment},
            )
        ]
    return None


def presentation(payload: Payload) -> dict[str, Any] | None:
    """JSON view of a payload recorded on the task result for auditing."""
    if isinstance(payload, JsonPayload):
        return payload.value
    if isinstance(payload, BinaryPayload):
        return dict(payload.metadata)
    return None
