"""Entry-node resolution for workflow graphs.

A workflow is run one of two ways:
- ManualEntry: submitted to the runtime, seeded through its trigger node.
- WebhookEntry: called through the public URL of its webhook node.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Union

from .errors import WorkflowConfigurationError
from .models import WorkflowDefinition, WorkflowNode

logger = logging.getLogger(__name__)

TRIGGER_NODE_TYPES = frozenset(
    {
        "n8n-nodes-base.manualTrigger",
        "n8n-nodes-base.webhook",
        "n8n-nodes-base.webhookTrigger",
        "@n8n/n8n-nodes-langchain.manualChatTrigger",
    }
)
WEBHOOK_NODE_TYPE = "n8n-nodes-base.webhook"
RESPOND_NODE_TYPE = "n8n-nodes-base.respondToWebhook"


@dataclass(frozen=True)
class ManualEntry:
    # None when the graph has no recognizable trigger; the runtime then
    # picks its own start node.
    node: WorkflowNode | None


@dataclass(frozen=True)
class WebhookEntry:
    node: WorkflowNode
    path: str
    method: str


EntryPoint = Union[ManualEntry, WebhookEntry]


def is_trigger_node(node: WorkflowNode) -> bool:
    return node.type in TRIGGER_NODE_TYPES or "trigger" in node.type.lower()


def find_trigger_node(workflow: WorkflowDefinition) -> WorkflowNode | None:
    trigger = next((node for node in workflow.nodes if is_trigger_node(node)), None)
    if trigger is None:
        logger.warning(
            "trigger_resolve event=no_trigger workflow_id=%s node_types=%s",
            workflow.id,
            [node.type for node in workflow.nodes],
        )
        return None
    logger.debug(
        "trigger_resolve event=found workflow_id=%s node=%s type=%s",
        workflow.id,
        trigger.name,
        trigger.type,
    )
    return trigger


def get_webhook_info(workflow: WorkflowDefinition) -> WebhookEntry | None:
    """Return the webhook exposure of a workflow, if its webhook node has a path."""
    webhook_node = next((node for node in workflow.nodes if node.type == WEBHOOK_NODE_TYPE), None)
    if webhook_node is None:
        return None
    path = webhook_node.parameters.get("path")
    if not isinstance(path, str) or not path.strip():
        logger.warning(
            "trigger_resolve event=webhook_without_path workflow_id=%s node=%s",
            workflow.id,
            webhook_node.name,
        )
        return None
    method = webhook_node.parameters.get("httpMethod")
    if not isinstance(method, str) or not method.strip():
        method = "GET"
    return WebhookEntry(node=webhook_node, path=path.strip().lstrip("/"), method=method.upper())


def resolve_entry(workflow: WorkflowDefinition) -> EntryPoint:
    """Pick the execution strategy for a loaded workflow.

    Raises WorkflowConfigurationError for a webhook workflow that is inactive,
    since its production URL is not registered until the workflow is activated.
    """
    webhook = get_webhook_info(workflow)
    if webhook is None:
        return ManualEntry(node=find_trigger_node(workflow))
    if not workflow.active:
        logger.warning(
            "trigger_resolve event=inactive_webhook workflow_id=%s path=%s",
            workflow.id,
            webhook.path,
        )
        raise WorkflowConfigurationError(
            f'Workflow "{workflow.name or workflow.id}" must be active to execute via webhook. '
            "Please activate the workflow and try again."
        )
    return webhook
