"""FastAPI application wiring for the task-chain service.

Shared runtime objects (catalog, execution driver, chain coordinator, chat graph,
chat storage) are built once in `create_app` and kept on `app.state`.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from .app.chain import TaskChainCoordinator
from .app.config import Settings, get_settings
from .app.describer import WorkflowDescriber
from .app.driver import ExecutionDriver
from .app.errors import (
    AIResponseParseError,
    InvalidTaskChainError,
    LLMNotConfiguredError,
    PlatformRequestError,
    TaskChainError,
    WorkflowNotFoundError,
)
from .app.extraction import OutputExtractor
from .app.graph import build_chat_graph, build_chat_messages, initial_chat_state
from .app.llm import LLMAdapter, build_llm_adapter, require_llm
from .app.models import (
    ChatRecord,
    ChatRequest,
    ChatResponse,
    ChatSummary,
    GenerateDescriptionRequest,
    RunTasksRequest,
    SaveChatRequest,
    TaskChainResult,
    User,
    WorkflowDescriptionRecord,
)
from .app.platform import READ_PERMISSION, PlatformApiClient, WorkflowCatalog, WorkflowRuntime
from .app.storage import ChatStorage, PostgresChatStorage
from .app.streaming import (
    STREAM_MEDIA_TYPE,
    encode_record,
    stream_chat_chunks,
    stream_task_chain,
)
from .app.synthesizer import ChainSynthesizer

logger = logging.getLogger(__name__)


def create_app(
    *,
    storage: ChatStorage | None = None,
    settings_override: Settings | None = None,
    catalog: WorkflowCatalog | None = None,
    runtime: WorkflowRuntime | None = None,
    llm_adapter: LLMAdapter | None = None,
) -> FastAPI:
    """Application factory.

    Collaborators default to HTTP-backed adapters built from settings; tests pass
    in-memory doubles instead.
    """
    settings = settings_override or get_settings()
    logging.getLogger("taskchain_api").setLevel(settings.log_level.upper())

    platform_client = PlatformApiClient(settings) if catalog is None or runtime is None else None
    catalog = catalog or platform_client
    runtime = runtime or platform_client
    if llm_adapter is None:
        llm_adapter = build_llm_adapter(settings)
    if llm_adapter is None:
        logger.warning("startup event=llm_disabled reason=missing_api_key")

    driver = ExecutionDriver(runtime=runtime, settings=settings)
    coordinator = TaskChainCoordinator(
        catalog=catalog,
        driver=driver,
        extractor=OutputExtractor(),
        summarizer=(
            ChainSynthesizer(llm_adapter=llm_adapter, timeout_s=settings.llm_timeout_s)
            if llm_adapter is not None
            else None
        ),
    )

    app = FastAPI(title=settings.app_name, version="0.1.0")
    app.state.settings = settings
    app.state.catalog = catalog
    app.state.llm_adapter = llm_adapter
    app.state.coordinator = coordinator
    app.state.chat_graph = build_chat_graph(
        catalog=catalog,
        llm_adapter=llm_adapter,
        llm_timeout_s=settings.llm_timeout_s,
    )
    if storage is not None:
        app.state.storage = storage

    def _get_chat_storage(request: Request) -> ChatStorage:
        if not hasattr(request.app.state, "storage"):
            if not settings.database_url:
                raise HTTPException(
                    status_code=503,
                    detail="Chat storage is not configured. Set TASKCHAIN_DATABASE_URL.",
                )
            chat_storage = PostgresChatStorage(settings.database_url)
            chat_storage.migrate()
            request.app.state.storage = chat_storage
        return request.app.state.storage

    @app.get("/health")
    @app.get("/healthz")
    @app.get("/live")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/chat", response_model=ChatResponse)
    def chat(payload: ChatRequest, request: Request) -> ChatResponse:
        user = _require_user(request)
        _require_chat_input(payload)
        try:
            state = request.app.state.chat_graph.invoke(
                initial_chat_state(user, payload.user_input, payload.messages)
            )
        except TaskChainError as exc:
            raise _to_http_exception(exc) from exc
        except Exception as exc:  # noqa: BLE001
            logger.error("chat event=failed user_id=%s error=%s", user.id, exc)
            raise HTTPException(status_code=502, detail=f"LLM request failed: {exc}") from exc
        return ChatResponse(
            content=state.get("content", ""),
            is_task_list=state.get("is_task_list", False),
            tasks=state.get("tasks", []),
        )

    @app.post("/chat/stream")
    def chat_stream(payload: ChatRequest, request: Request) -> StreamingResponse:
        user = _require_user(request)
        _require_chat_input(payload)
        chat_graph = request.app.state.chat_graph

        def records():
            try:
                state = chat_graph.invoke(
                    initial_chat_state(user, payload.user_input, payload.messages, stream=True)
                )
                if state.get("is_task_list"):
                    response = ChatResponse(
                        content=state.get("content", ""),
                        is_task_list=True,
                        tasks=state.get("tasks", []),
                    )
                    yield encode_record(response.model_dump(mode="json", by_alias=True))
                    return
                messages = build_chat_messages(payload.user_input, payload.messages)
                chunks = require_llm(llm_adapter).stream(
                    messages=messages, timeout_s=settings.llm_timeout_s
                )
            except Exception as exc:  # noqa: BLE001
                logger.error("chat_stream event=failed user_id=%s error=%s", user.id, exc)
                yield encode_record(
                    {"content": str(exc) or "An error occurred", "isTaskList": False, "tasks": []}
                )
                return
            yield from stream_chat_chunks(chunks)

        return StreamingResponse(records(), media_type=STREAM_MEDIA_TYPE)

    @app.post("/tasks/run", response_model=TaskChainResult, response_model_by_alias=False)
    def run_tasks(payload: RunTasksRequest, request: Request) -> TaskChainResult:
        user = _require_user(request)
        _log_task_list(user, payload)
        try:
            return request.app.state.coordinator.run_task_chain(
                user, payload.tasks, payload.user_prompt
            )
        except TaskChainError as exc:
            raise _to_http_exception(exc) from exc

    @app.post("/tasks/run/stream")
    def run_tasks_stream(payload: RunTasksRequest, request: Request) -> StreamingResponse:
        user = _require_user(request)
        _log_task_list(user, payload)
        chain_coordinator: TaskChainCoordinator = request.app.state.coordinator

        def run_chain(progress_callback, cancel_event):
            return chain_coordinator.run_task_chain(
                user,
                payload.tasks,
                payload.user_prompt,
                progress_callback=progress_callback,
                cancel_event=cancel_event,
            )

        return StreamingResponse(stream_task_chain(run_chain), media_type=STREAM_MEDIA_TYPE)

    @app.get("/workflows/descriptions", response_model=list[WorkflowDescriptionRecord])
    def list_workflow_descriptions(request: Request) -> list[WorkflowDescriptionRecord]:
        user = _require_user(request)
        try:
            return request.app.state.catalog.get_workflow_descriptions(user)
        except TaskChainError as exc:
            raise _to_http_exception(exc) from exc

    @app.post("/workflows/{workflow_id}/description")
    def generate_workflow_description(
        workflow_id: str,
        payload: GenerateDescriptionRequest,
        request: Request,
    ) -> dict[str, Any]:
        user = _require_user(request)
        try:
            workflow = request.app.state.catalog.find_workflow_for_user(
                workflow_id, user, [READ_PERMISSION]
            )
            if workflow is None:
                raise WorkflowNotFoundError(workflow_id)
            describer = WorkflowDescriber(
                llm_adapter=require_llm(request.app.state.llm_adapter),
                timeout_s=settings.llm_timeout_s,
            )
            description = describer.generate_description(workflow.nodes, payload.user_input)
        except TaskChainError as exc:
            raise _to_http_exception(exc) from exc
        except Exception as exc:  # noqa: BLE001
            logger.error("describe event=failed workflow_id=%s error=%s", workflow_id, exc)
            raise HTTPException(status_code=502, detail=f"LLM request failed: {exc}") from exc
        logger.info(
            "describe event=generated workflow_id=%s keys=%s", workflow_id, sorted(description)
        )
        return description

    @app.post("/chats")
    def save_chat(payload: SaveChatRequest, request: Request) -> dict[str, Any]:
        user = _require_user(request)
        record = _get_chat_storage(request).save_chat(
            user_id=user.id,
            chat_id=payload.chat_id,
            title=payload.title,
            messages=payload.messages,
        )
        if record is None:
            raise HTTPException(status_code=404, detail=f'Chat with ID "{payload.chat_id}" not found')
        return {"id": record.id, "title": record.title}

    @app.get("/chats", response_model=list[ChatSummary])
    def list_chats(request: Request) -> list[ChatSummary]:
        user = _require_user(request)
        return _get_chat_storage(request).list_chats(user.id)

    @app.get("/chats/{chat_id}", response_model=ChatRecord)
    def get_chat(chat_id: str, request: Request) -> ChatRecord:
        user = _require_user(request)
        record = _get_chat_storage(request).get_chat(user.id, chat_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f'Chat with ID "{chat_id}" not found')
        return record

    @app.delete("/chats/{chat_id}")
    def delete_chat(chat_id: str, request: Request) -> dict[str, bool]:
        user = _require_user(request)
        if not _get_chat_storage(request).delete_chat(user.id, chat_id):
            raise HTTPException(status_code=404, detail=f'Chat with ID "{chat_id}" not found')
        return {"success": True}

    return app


def _require_user(request: Request) -> User:
    """Identity forwarded by the host's auth layer."""
    user_id = (request.headers.get("X-User-Id") or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    email = (request.headers.get("X-User-Email") or "").strip() or None
    return User(id=user_id, email=email)


def _require_chat_input(payload: ChatRequest) -> None:
    has_history = any(message.content.strip() for message in payload.messages)
    if not payload.user_input.strip() and not has_history:
        raise HTTPException(status_code=400, detail="userInput or messages is required")


def _log_task_list(user: User, payload: RunTasksRequest) -> None:
    logger.info(
        "task_run event=requested user_id=%s total_tasks=%d workflow_ids=%s",
        user.id,
        len(payload.tasks),
        [task.workflow_id for task in payload.tasks],
    )


def _to_http_exception(exc: TaskChainError) -> HTTPException:
    if isinstance(exc, InvalidTaskChainError):
        status_code = 400
    elif isinstance(exc, WorkflowNotFoundError):
        status_code = 404
    elif isinstance(exc, LLMNotConfiguredError):
        status_code = 503
    elif isinstance(exc, (AIResponseParseError, PlatformRequestError)):
        status_code = 502
    else:
        status_code = 500
    return HTTPException(status_code=status_code, detail=str(exc))


# Module-level app for `uvicorn taskchain_api.main:app`.
app = create_app()
