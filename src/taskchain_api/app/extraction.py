"""Recover "the" output of a completed run from its per-node results.

Workflow authors follow no fixed convention for the node that holds the final
answer, so extraction walks an ordered list of strategies and keeps the first
non-empty hit. Each strategy can be tested and reordered on its own.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from .models import NodeExecutionItem, RunResult, WorkflowDefinition
from .triggers import RESPOND_NODE_TYPE, is_trigger_node

logger = logging.getLogger(__name__)


class ExtractionStrategy(Protocol):
    name: str

    def try_extract(
        self, run: RunResult, workflow: WorkflowDefinition
    ) -> list[NodeExecutionItem] | None: ...


def get_node_run_output(run: RunResult, node_name: str) -> list[NodeExecutionItem] | None:
    """First output branch of the latest run of a node."""
    node_runs = run.run_data.get(node_name)
    if not node_runs:
        return None
    latest = node_runs[-1]
    main_output = (latest.data or {}).get("main")
    if not main_output:
        return None
    return main_output[0] or None


def _first_output(
    run: RunResult, node_names: list[str]
) -> tuple[str, list[NodeExecutionItem]] | None:
    for node_name in node_names:
        items = get_node_run_output(run, node_name)
        if items:
            return node_name, items
    return None


class RespondNodeStrategy:
    name = "respond_node"

    def try_extract(
        self, run: RunResult, workflow: WorkflowDefinition
    ) -> list[NodeExecutionItem] | None:
        names = [node.name for node in workflow.nodes if node.type == RESPOND_NODE_TYPE]
        hit = _first_output(run, names)
        return hit[1] if hit else None


class LastExecutedNodeStrategy:
    name = "last_executed_node"

    def try_extract(
        self, run: RunResult, workflow: WorkflowDefinition
    ) -> list[NodeExecutionItem] | None:
        if not run.last_node_executed:
            return None
        return get_node_run_output(run, run.last_node_executed)


class NamingConventionStrategy:
    """Nodes named like "Return to Task Manager" or typed like a task node."""

    name = "naming_convention"

    def try_extract(
        self, run: RunResult, workflow: WorkflowDefinition
    ) -> list[NodeExecutionItem] | None:
        names = [
            node.name
            for node in workflow.nodes
            if "task" in node.name.lower()
            or "return" in node.name.lower()
            or "task" in node.type.lower()
        ]
        hit = _first_output(run, names)
        return hit[1] if hit else None


class ExecutedNodesStrategy:
    """Most recently executed non-trigger node with output.

    Trigger output is usually the seed data passed straight through.
    """

    name = "executed_nodes"

    def try_extract(
        self, run: RunResult, workflow: WorkflowDefinition
    ) -> list[NodeExecutionItem] | None:
        trigger_names = {node.name for node in workflow.nodes if is_trigger_node(node)}
        names = [name for name in reversed(list(run.run_data)) if name not in trigger_names]
        hit = _first_output(run, names)
        return hit[1] if hit else None


class LastNodeDataStrategy:
    """Generic accessor: output of the last node in the run data, triggers included."""

    name = "last_node_data"

    def try_extract(
        self, run: RunResult, workflow: WorkflowDefinition
    ) -> list[NodeExecutionItem] | None:
        node_name = run.last_node_executed or next(reversed(list(run.run_data)), None)
        if node_name is None:
            return None
        node_runs = run.run_data.get(node_name)
        if not node_runs:
            return None
        for branch in (node_runs[-1].data or {}).get("main") or []:
            if branch:
                return branch
        return None


DEFAULT_STRATEGIES: tuple[ExtractionStrategy, ...] = (
    RespondNodeStrategy(),
    LastExecutedNodeStrategy(),
    NamingConventionStrategy(),
    ExecutedNodesStrategy(),
    LastNodeDataStrategy(),
)


class OutputExtractor:
    def __init__(self, strategies: tuple[ExtractionStrategy, ...] | None = None) -> None:
        self.strategies = strategies if strategies is not None else DEFAULT_STRATEGIES

    def extract(
        self, run: RunResult, workflow: WorkflowDefinition
    ) -> list[NodeExecutionItem] | None:
        for strategy in self.strategies:
            items = strategy.try_extract(run, workflow)
            if items:
                logger.info(
                    "output_extract event=found workflow_id=%s strategy=%s items=%d",
                    workflow.id,
                    strategy.name,
                    len(items),
                )
                return items
        logger.warning(
            "output_extract event=empty workflow_id=%s last_node=%s executed_nodes=%s",
            workflow.id,
            run.last_node_executed,
            list(run.run_data),
        )
        return None


def extract_primary_json(items: list[NodeExecutionItem] | None) -> dict[str, Any] | None:
    """`json` of the first output item, even when it is an empty object."""
    if not items:
        return None
    payload = items[0].json_data
    if len(payload) == 1 and isinstance(payload.get("prompt"), str):
        logger.warning(
            "output_extract event=prompt_passthrough prompt=%r",
            payload["prompt"][:100],
        )
    return payload


def extract_binary_item(items: list[NodeExecutionItem] | None) -> NodeExecutionItem | None:
    if not items:
        return None
    return next((item for item in items if item.binary), None)
