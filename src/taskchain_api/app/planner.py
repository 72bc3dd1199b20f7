"""Task planning: decide whether a message is a task, then break it into workflow steps.

Two pieces:
1) `detect_task`: a keyword heuristic, no model call.
2) `TaskPlanner`: asks the LLM for an ordered task list over the user's own
   workflow catalog, then validates every workflow id against that catalog.

The planner never runs anything. Its output is shown to the user, who decides
whether to run the chain.
"""

from __future__ import annotations

import json
import logging

from pydantic import BaseModel, Field

from .errors import AIResponseParseError
from .llm import LLMAdapter, generate_structured
from .models import TaskPlanItem, User
from .platform import WorkflowCatalog

logger = logging.getLogger(__name__)

TASK_KEYWORDS = (
    "create",
    "make",
    "build",
    "generate",
    "set up",
    "setup",
    "do",
    "perform",
    "execute",
    "run",
    "complete",
    "finish",
    "task",
    "workflow",
    "automate",
)
ACTION_VERBS = ("create", "make", "build", "generate", "set up", "do", "perform")

MAX_TASK_DESCRIPTION_CHARS = 150
NO_TASKS_MESSAGE = "No tasks were generated."


class TaskList(BaseModel):
    tasks: list[TaskPlanItem] = Field(default_factory=list)


def detect_task(user_input: str) -> bool:
    """Heuristic: does this message ask for something to be done?

    Substring match, so "do" also hits words like "document". Plain chat is the
    cheaper path when this is wrong, and the user confirms before anything runs.
    """
    lowered = user_input.strip().lower()
    if not lowered:
        return False
    has_keyword = any(keyword in lowered for keyword in TASK_KEYWORDS)
    starts_with_action = any(lowered.startswith(verb) for verb in ACTION_VERBS)
    return has_keyword or starts_with_action


def format_task_list(tasks: list[TaskPlanItem]) -> str:
    """Markdown rendering of a task list for the chat transcript."""
    if not tasks:
        return NO_TASKS_MESSAGE

    plural = "s" if len(tasks) > 1 else ""
    intro = (
        f"**Task Manager** has analyzed your request and broken it down into "
        f"{len(tasks)} task{plural}:\n\n"
    )
    lines = []
    for index, task in enumerate(tasks, start=1):
        description = task.task or "No description provided"
        if len(description) > MAX_TASK_DESCRIPTION_CHARS:
            description = description[: MAX_TASK_DESCRIPTION_CHARS - 3] + "..."
        lines.append(f"**{index}. {task.workflow_id}**\n{description}")
    explanation = (
        "\n\n*The orchestrator coordinates these tasks across your workflows. "
        'Click "Run" to execute them or "Cancel" to go back.*'
    )
    return intro + "\n\n".join(lines) + explanation


class TaskPlanner:
    """LLM-backed planner constrained to the user's workflow catalog."""

    def __init__(
        self,
        *,
        llm_adapter: LLMAdapter,
        catalog: WorkflowCatalog,
        timeout_s: float = 60.0,
    ) -> None:
        self.llm_adapter = llm_adapter
        self.catalog = catalog
        self.timeout_s = timeout_s

    def build_task_list(self, user: User, user_input: str) -> list[TaskPlanItem]:
        catalog_entries = self._catalog_entries(user)
        if not catalog_entries:
            logger.warning("planner event=empty_catalog user_id=%s", user.id)
            return []

        system_prompt = (
            "You are Task Manager, the planning module of a workflow orchestrator. "
            "Return JSON only, shaped as {\"tasks\": [...]}. Break the user's request into "
            "the fewest ordered tasks that accomplish it. Each task must use exactly one "
            "workflow from the catalog and has the keys 'workflowId', 'task' (one sentence), "
            "'input' and 'output'. 'input' is one of 'JSON', 'png' or 'noInput'; 'output' is "
            "one of 'JSON', 'png' or 'noOutput'. Tasks run in order and each task receives "
            "the previous task's output, so adjacent types must match. The first task "
            "receives the user's request as {\"prompt\": ...} when its input is 'JSON'. "
            "Only use workflowId values that appear in the catalog. If no workflow fits, "
            "return {\"tasks\": []}."
        )
        user_prompt = (
            f"Workflow catalog JSON:\n{json.dumps(catalog_entries, ensure_ascii=True, indent=2)}\n\n"
            f"User request:\n{user_input}\n\n"
            "Respond with JSON only. Do not include markdown formatting or code blocks."
        )
        task_list = generate_structured(
            self.llm_adapter,
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            response_model=TaskList,
            timeout_s=self.timeout_s,
        )
        self._validate_workflow_ids(task_list.tasks, {entry["workflowId"] for entry in catalog_entries})
        logger.info(
            "planner event=planned user_id=%s tasks=%d workflow_ids=%s",
            user.id,
            len(task_list.tasks),
            [task.workflow_id for task in task_list.tasks],
        )
        return task_list.tasks

    def _catalog_entries(self, user: User) -> list[dict[str, object]]:
        entries: list[dict[str, object]] = []
        for record in self.catalog.get_workflow_descriptions(user):
            description = record.workflow_description
            if not description:
                continue
            entries.append(
                {
                    "workflowId": record.workflow_id,
                    "workflowName": description.get("workflowName"),
                    "description": description.get("description"),
                    "inputType": description.get("inputType"),
                    "outputType": description.get("outputType"),
                }
            )
        return entries

    @staticmethod
    def _validate_workflow_ids(tasks: list[TaskPlanItem], allowed: set[str]) -> None:
        """Allowlist workflow ids so the model cannot route to workflows outside the catalog."""
        unknown = [task.workflow_id for task in tasks if task.workflow_id not in allowed]
        if unknown:
            logger.error("planner event=unknown_workflows workflow_ids=%s", unknown)
            raise AIResponseParseError(
                f"Planner referenced workflows outside the catalog: {', '.join(unknown)}"
            )
