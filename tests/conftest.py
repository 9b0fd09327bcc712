"""Test configuration for the PDF viewer service."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Generator

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from pdfviewer.config import get_settings, reset_settings_cache  # noqa: E402
from pdfviewer.container import ServiceContainer  # noqa: E402
from pdfviewer.database import init_db, reset_database_state  # noqa: E402
from pdfviewer.observability import metrics_registry  # noqa: E402
from pdfviewer.services.page_extraction import PageExtractor  # noqa: E402


@pytest.fixture(autouse=True)
def _isolate_environment(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> Generator[None, None, None]:
    """Provide isolated configuration for each test."""

    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'test.db'}")
    monkeypatch.setenv("STORAGE_DIR", str(tmp_path / "storage"))
    monkeypatch.setenv("CACHE_BACKEND", "memory")
    monkeypatch.setenv("HASH_SALT", "test-salt")
    monkeypatch.setenv("RETRY_BACKOFF_SECONDS", "0")
    monkeypatch.setenv("PAGE_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("WORKER_CONCURRENCY", "4")
    monkeypatch.setenv("RESUME_ON_STARTUP", "true")
    reset_settings_cache()
    reset_database_state()
    metrics_registry.reset()
    yield
    reset_settings_cache()
    reset_database_state()
    metrics_registry.reset()


@pytest.fixture()
def make_container() -> Generator[Callable[..., ServiceContainer], None, None]:
    """Build service containers against the isolated database and storage."""

    created: list[ServiceContainer] = []

    def _build(worker: PageExtractor | None = None) -> ServiceContainer:
        init_db()
        container = ServiceContainer.from_settings(get_settings(), worker=worker)
        created.append(container)
        return container

    yield _build
    for container in created:
        container.shutdown(wait=True)


@pytest.fixture()
def container(make_container) -> ServiceContainer:
    return make_container()


@pytest.fixture()
def client() -> Generator[TestClient, None, None]:
    """Return a test client for the FastAPI application."""

    from pdfviewer.main import app

    with TestClient(app) as test_client:
        yield test_client
