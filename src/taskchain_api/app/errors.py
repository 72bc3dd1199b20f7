"""Error taxonomy for task-chain execution and its collaborators."""

from __future__ import annotations


class TaskChainError(Exception):
    """Base class for errors raised while planning or running a task chain."""


class InvalidTaskChainError(TaskChainError, ValueError):
    """The request itself is malformed (for example an empty task list)."""


class WorkflowNotFoundError(TaskChainError):
    """Workflow does not exist or the user may not execute it."""

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f'Workflow with ID "{workflow_id}" not found')
        self.workflow_id = workflow_id


class WorkflowConfigurationError(TaskChainError):
    """Workflow exists but cannot be executed as configured."""


class DataContractError(TaskChainError):
    """Input or output data required by a task's I/O type is missing."""


class ExecutionFailedError(TaskChainError):
    """The runtime or the webhook reported a failed execution."""


class ExecutionTimeoutError(ExecutionFailedError):
    """The runtime did not report completion within the configured timeout."""


class ChainCancelledError(TaskChainError):
    """The caller cancelled the chain while it was running."""


class PlatformRequestError(TaskChainError):
    """A call to the workflow platform REST API failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class LLMNotConfiguredError(TaskChainError):
    """No language-model API key is configured."""


class AIResponseParseError(TaskChainError):
    """Model output could not be parsed into the expected JSON shape."""
