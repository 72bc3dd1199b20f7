from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from doubles import USER, FakeCatalog, FakeLLM, FakeRuntime, InMemoryChatStorage
from taskchain_api.app.config import Settings


@pytest.fixture(autouse=True)
def _isolate_llm_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    monkeypatch.delenv("TASKCHAIN_LLM_API_KEY", raising=False)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="",
        llm_api_key="",
        platform_base_url="http://platform.test",
        webhook_base_url="http://hooks.test",
        execution_timeout_s=2.0,
        webhook_timeout_s=5.0,
    )


@pytest.fixture
def catalog() -> FakeCatalog:
    return FakeCatalog()


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def chat_storage() -> InMemoryChatStorage:
    return InMemoryChatStorage()


@pytest.fixture
def client(
    settings: Settings,
    catalog: FakeCatalog,
    runtime: FakeRuntime,
    llm: FakeLLM,
    chat_storage: InMemoryChatStorage,
) -> TestClient:
    from taskchain_api.main import create_app

    app = create_app(
        storage=chat_storage,
        settings_override=settings,
        catalog=catalog,
        runtime=runtime,
        llm_adapter=llm,
    )
    with TestClient(app, headers={"X-User-Id": USER.id}) as test_client:
        yield test_client
