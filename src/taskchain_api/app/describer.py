"""Generate the description metadata stored next to a workflow.

The planner reads these descriptions (name, summary, input/output types) to pick
workflows, and the chain coordinator reads the declared I/O types.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from .io_types import normalize_io_type
from .llm import LLMAdapter, parse_json_response
from .models import WorkflowNode

logger = logging.getLogger(__name__)

DESCRIPTION_SYSTEM_PROMPT = """You are a helpful assistant that responds with JSON only. Analyze workflow nodes and user input, then return a JSON object describing the workflow.

Example:
{
  "inputType": "noInput",
  "outputType": "JSON",
  "workflowName": "Automated HVAC Lead Processing and Notification",
  "description": "Monitors a Gmail inbox for HVAC lead emails, classifies each lead, scores its quality and posts the enriched lead to Slack.",
  "trigger": {"type": "Gmail Trigger", "description": "Polls the leads inbox every minute."},
  "steps": [
    {"stepName": "Lead Parser & Classifier", "type": "Function", "description": "Extracts sender details and classifies the lead."},
    {"stepName": "Send a message", "type": "Slack", "description": "Posts the enriched lead to #leads."}
  ],
  "integrations": ["Gmail", "Slack"],
  "keyFeatures": ["Automated lead capture from email", "Real-time lead notification to Slack"]
}

The inputType can only be "JSON", "png", or "noInput".
The outputType can only be "JSON", "png", or "noOutput".
"""


class WorkflowDescriber:
    def __init__(self, *, llm_adapter: LLMAdapter, timeout_s: float = 60.0) -> None:
        self.llm_adapter = llm_adapter
        self.timeout_s = timeout_s

    def generate_description(self, nodes: list[WorkflowNode], user_input: str) -> dict[str, Any]:
        nodes_json = json.dumps(
            [node.model_dump(mode="json") for node in nodes], ensure_ascii=True, indent=2
        )
        user_prompt = (
            f"Workflow nodes: {nodes_json}\n\nUser request: {user_input}\n\n"
            "Respond with JSON only. Do not include any markdown formatting or code blocks. "
            "Return only valid JSON."
        )
        logger.debug("describer event=request nodes=%d", len(nodes))
        content = self.llm_adapter.complete(
            messages=[
                {"role": "system", "content": DESCRIPTION_SYSTEM_PROMPT},
                {"role": "user", "content": user_prompt},
            ],
            timeout_s=self.timeout_s,
            json_mode=True,
        )
        description = parse_json_response(content)
        return normalize_description_types(description)


def normalize_description_types(description: dict[str, Any]) -> dict[str, Any]:
    """Canonicalize declared I/O types; drop values outside the allowed sets."""
    normalized = dict(description)
    input_type = normalize_io_type(description.get("inputType"))
    output_type = normalize_io_type(description.get("outputType"))
    if input_type in ("JSON", "png", "noInput"):
        normalized["inputType"] = input_type
    else:
        normalized.pop("inputType", None)
    if output_type in ("JSON", "png", "noOutput"):
        normalized["outputType"] = output_type
    else:
        if "outputType" in description:
            logger.warning(
                "describer event=invalid_output_type value=%r", description.get("outputType")
            )
        normalized.pop("outputType", None)
    return normalized
