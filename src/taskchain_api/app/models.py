"""Pydantic models shared across the API, chain coordinator, driver and storage.

Workflow-platform shapes (nodes, run data, execution requests) keep the
platform's camelCase names as aliases so they validate straight from its JSON;
everything owned by this service uses snake_case.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel

# Canonical payload shape a task consumes or produces.
TaskIoType = Literal["JSON", "png", "noInput", "noOutput"]

# Per-task lifecycle: pending -> running -> succeeded | failed, forward only.
TaskExecutionStatus = Literal["pending", "running", "succeeded", "failed"]


class PlatformModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class User(BaseModel):
    """Identity supplied by the host's auth layer."""

    id: str
    email: str | None = None


# --- workflow platform shapes -------------------------------------------------


class WorkflowNode(PlatformModel):
    name: str
    type: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)


class WorkflowDefinition(PlatformModel):
    id: str
    name: str = ""
    active: bool = False
    nodes: list[WorkflowNode] = Field(default_factory=list)
    connections: dict[str, Any] = Field(default_factory=dict)


class WorkflowDescriptionRecord(PlatformModel):
    """Raw description record as stored next to a workflow in the catalog."""

    workflow_id: str = Field(alias="workflowId")
    workflow_description: dict[str, Any] | None = Field(default=None, alias="workflowDescription")


class WorkflowDescriptionMetadata(BaseModel):
    """Normalized description metadata used to resolve a task's I/O types."""

    input_type: TaskIoType | None = None
    output_type: TaskIoType | None = None
    workflow_name: str | None = None


class BinaryData(PlatformModel):
    # Base64-encoded content, as the platform transports it.
    data: str = ""
    mime_type: str = Field(default="application/octet-stream", alias="mimeType")
    file_name: str | None = Field(default=None, alias="fileName")


class NodeExecutionItem(PlatformModel):
    """One item flowing between nodes: a JSON object plus optional attachments."""

    json_data: dict[str, Any] = Field(default_factory=dict, alias="json")
    binary: dict[str, BinaryData] | None = None


class NodeRun(PlatformModel):
    """One run of a node; `data["main"][0]` is the first output branch."""

    start_time: int = Field(default=0, alias="startTime")
    execution_time: int = Field(default=0, alias="executionTime")
    execution_index: int = Field(default=0, alias="executionIndex")
    execution_status: str | None = Field(default=None, alias="executionStatus")
    source: list[Any] = Field(default_factory=list)
    data: dict[str, list[list[NodeExecutionItem] | None]] | None = None


class RunError(PlatformModel):
    message: str = ""
    node: dict[str, Any] | None = None


class RunResult(PlatformModel):
    """Completed execution as reported by the runtime.

    `run_data` is keyed by node name; key order follows execution order.
    """

    execution_id: str | None = None
    finished: bool = False
    status: str | None = None
    run_data: dict[str, list[NodeRun]] = Field(default_factory=dict)
    last_node_executed: str | None = None
    error: RunError | None = None


class StartNode(PlatformModel):
    name: str
    source_data: dict[str, Any] | None = Field(default=None, alias="sourceData")


class TriggerToStartFrom(PlatformModel):
    name: str
    data: NodeRun | None = None


class ExecutionRequest(PlatformModel):
    """Manual-run request, serialized with aliases for the platform."""

    workflow_data: WorkflowDefinition = Field(alias="workflowData")
    run_data: dict[str, Any] | None = Field(default=None, alias="runData")
    start_nodes: list[StartNode] | None = Field(default=None, alias="startNodes")
    trigger_to_start_from: TriggerToStartFrom | None = Field(
        default=None, alias="triggerToStartFrom"
    )
    destination_node: str | None = Field(default=None, alias="destinationNode")


# --- task chain ---------------------------------------------------------------


class TaskPlanItem(BaseModel):
    """One planned step; immutable once the chain starts."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    workflow_id: str = Field(alias="workflowId", min_length=1)
    # Display/logging only.
    task: str = ""
    input: str | None = None
    output: str | None = None


class TaskExecutionResult(BaseModel):
    # camelCase aliases for the streamed task-chain records.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    index: int
    workflow_id: str
    workflow_name: str | None = None
    task_summary: str = ""
    status: TaskExecutionStatus = "pending"
    input_type: TaskIoType
    output_type: TaskIoType
    started_at: datetime | None = None
    finished_at: datetime | None = None
    execution_id: str | None = None
    # What was actually sent, for audit.
    input_payload: dict[str, Any] | None = None
    output_payload: dict[str, Any] | None = None
    # Full node output, kept for binary passthrough.
    raw_output: list[NodeExecutionItem] | None = None
    error: str | None = None


class ChainProgressCursor(BaseModel):
    current_task_index: int
    total_tasks: int
    current_workflow_id: str | None = None


class TaskChainResult(BaseModel):
    success: bool
    tasks: list[TaskExecutionResult]
    progress: ChainProgressCursor
    failed_task: TaskExecutionResult | None = None
    error: str | None = None
    final_output: dict[str, Any] | None = None
    summary: str | None = None

    @computed_field
    @property
    def executed_tasks(self) -> int:
        return sum(1 for task in self.tasks if task.status == "succeeded")


class TaskProgress(BaseModel):
    status: TaskExecutionStatus
    current_task_index: int
    total_tasks: int
    workflow_id: str
    workflow_name: str | None = None
    message: str
    error: str | None = None


class RunTasksRequest(BaseModel):
    """Request body for POST /tasks/run and /tasks/run/stream."""

    model_config = ConfigDict(populate_by_name=True)

    tasks: list[TaskPlanItem] = Field(default_factory=list)
    user_prompt: str | None = Field(default=None, alias="userPrompt")


# --- chat ---------------------------------------------------------------------


ChatRole = Literal["user", "assistant"]


class ChatMessage(BaseModel):
    role: ChatRole
    content: str


class ChatRequest(BaseModel):
    """Request body for POST /chat and /chat/stream."""

    model_config = ConfigDict(populate_by_name=True)

    user_input: str = Field(default="", alias="userInput")
    messages: list[ChatMessage] = Field(default_factory=list)


class ChatResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    content: str
    is_task_list: bool = Field(default=False, alias="isTaskList")
    tasks: list[TaskPlanItem] = Field(default_factory=list)


class GenerateDescriptionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_input: str = Field(alias="userInput", min_length=1)


class StoredChatMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    type: ChatRole
    content: str
    timestamp: datetime
    is_task_list: bool | None = Field(default=None, alias="isTaskList")
    tasks: list[TaskPlanItem] | None = None


class SaveChatRequest(BaseModel):
    """Request body for POST /chats."""

    model_config = ConfigDict(populate_by_name=True)

    chat_id: str | None = Field(default=None, alias="chatId")
    title: str | None = Field(default=None, max_length=256)
    messages: list[StoredChatMessage] = Field(min_length=1)


class ChatRecord(BaseModel):
    id: str
    user_id: str
    title: str | None = None
    messages: list[StoredChatMessage] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class ChatSummary(BaseModel):
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
