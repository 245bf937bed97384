from __future__ import annotations

import pytest

from docflow.config import AppConfig, get_config
from docflow.main import build_services
from tests.stubs.pipeline_stubs import FakeClock, FakeLocator, FakeOcrProvider


def _base_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ("OPENAI_API_KEY", "SEARCH_INDEX_URL", "PIPELINE_STATUS_TOPIC"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("PROJECT_ID", "proj")
    monkeypatch.setenv("REGION", "us")
    monkeypatch.setenv("DOC_AI_PROCESSOR_ID", "pid")
    monkeypatch.setenv("INTAKE_GCS_BUCKET", "intake")
    monkeypatch.setenv("OCR_OUTPUT_BUCKET", "ocr-out")
    monkeypatch.setenv("PIPELINE_STATE_BACKEND", "memory")
    monkeypatch.setenv("DOCUMENT_STORE_BACKEND", "memory")
    monkeypatch.setenv("INTERNAL_EVENT_TOKEN", "token")
    monkeypatch.setenv("ENABLE_SWEEPER", "false")
    get_config.cache_clear()


@pytest.fixture
def env(monkeypatch: pytest.MonkeyPatch):
    _base_env(monkeypatch)
    yield monkeypatch
    get_config.cache_clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider() -> FakeOcrProvider:
    return FakeOcrProvider()


@pytest.fixture
def locator() -> FakeLocator:
    return FakeLocator()


@pytest.fixture
def services(env, clock, provider, locator):
    return build_services(AppConfig(), provider=provider, locator=locator, clock=clock)
