"""LangGraph routing for chat requests: detect a task, then plan it or just chat."""

from __future__ import annotations

import logging
from typing import Any, TypedDict

from langgraph.graph import END, StateGraph

from .llm import LLMAdapter, Message, require_llm
from .models import ChatMessage, TaskPlanItem, User
from .planner import TaskPlanner, detect_task, format_task_list
from .platform import WorkflowCatalog

logger = logging.getLogger(__name__)

CHAT_SYSTEM_PROMPT = "You are a helpful AI assistant."


class ChatState(TypedDict, total=False):
    user: User
    user_input: str
    messages: list[ChatMessage]
    # Streaming callers produce the chat reply themselves; the graph stops after detect.
    stream: bool
    is_task: bool
    content: str
    is_task_list: bool
    tasks: list[TaskPlanItem]


def initial_chat_state(
    user: User,
    user_input: str,
    messages: list[ChatMessage] | None = None,
    *,
    stream: bool = False,
) -> ChatState:
    return {
        "user": user,
        "user_input": user_input.strip(),
        "messages": list(messages or []),
        "stream": stream,
        "is_task": False,
        "content": "",
        "is_task_list": False,
        "tasks": [],
    }


def build_chat_messages(user_input: str, history: list[ChatMessage]) -> list[Message]:
    messages: list[Message] = [{"role": "system", "content": CHAT_SYSTEM_PROMPT}]
    for message in history:
        if message.content.strip():
            messages.append({"role": message.role, "content": message.content})
    if user_input.strip():
        messages.append({"role": "user", "content": user_input})
    if len(messages) == 1:
        raise ValueError("At least one user message is required")
    return messages


def build_chat_graph(
    *,
    catalog: WorkflowCatalog,
    llm_adapter: LLMAdapter | None,
    llm_timeout_s: float = 60.0,
):
    def detect(state: ChatState) -> dict[str, Any]:
        is_task = detect_task(state.get("user_input", ""))
        logger.info("chat_route event=detect is_task=%s", is_task)
        return {"is_task": is_task}

    def plan(state: ChatState) -> dict[str, Any]:
        planner = TaskPlanner(
            llm_adapter=require_llm(llm_adapter),
            catalog=catalog,
            timeout_s=llm_timeout_s,
        )
        tasks = planner.build_task_list(state["user"], state.get("user_input", ""))
        return {"content": format_task_list(tasks), "is_task_list": True, "tasks": tasks}

    def chat(state: ChatState) -> dict[str, Any]:
        messages = build_chat_messages(state.get("user_input", ""), state.get("messages", []))
        content = require_llm(llm_adapter).complete(messages=messages, timeout_s=llm_timeout_s)
        return {"content": content, "is_task_list": False, "tasks": []}

    def _route(state: ChatState) -> str:
        if state.get("is_task"):
            return "plan"
        if state.get("stream"):
            return "done"
        return "chat"

    graph = StateGraph(ChatState)

    graph.add_node("detect", detect)
    graph.add_node("plan", plan)
    graph.add_node("chat", chat)

    graph.set_entry_point("detect")
    graph.add_conditional_edges("detect", _route, {"plan": "plan", "chat": "chat", "done": END})
    graph.add_edge("plan", END)
    graph.add_edge("chat", END)

    return graph.compile()
