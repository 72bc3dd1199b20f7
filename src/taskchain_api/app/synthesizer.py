from __future__ import annotations

import logging

from .llm import LLMAdapter

logger = logging.getLogger(__name__)


class ChainSynthesizer:
    """Natural-language summary of a chain whose last task produced no output."""

    def __init__(self, *, llm_adapter: LLMAdapter, timeout_s: float = 60.0) -> None:
        self.llm_adapter = llm_adapter
        self.timeout_s = timeout_s

    def summarize_tasks(self, task_descriptions: list[str], user_prompt: str | None) -> str:
        numbered = "\n".join(
            f"{index}. {description or 'Unnamed task'}"
            for index, description in enumerate(task_descriptions, start=1)
        )
        system_prompt = (
            "You summarize completed automation runs for the person who requested them. "
            "Reply in two or three plain sentences. Do not invent results that are not "
            "implied by the task list."
        )
        user_prompt_text = (
            f"Original request:\n{user_prompt or '(not provided)'}\n\n"
            f"Completed tasks, in order:\n{numbered}\n\n"
            "Summarize what was done."
        )
        summary = self.llm_adapter.complete(
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt_text},
            ],
            timeout_s=self.timeout_s,
        )
        logger.debug("synthesizer event=summary tasks=%d chars=%d", len(task_descriptions), len(summary))
        return summary
