"""Pytest configuration and fixtures."""

import os

import pytest

# Set before collection so module-level loggers resolve settings
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-key")
os.environ.setdefault("OPENAI_API_KEY", "test-openai-key")
os.environ.setdefault("BRIDGE_ENGINE_ENV", "test")


@pytest.fixture(autouse=True)
def clear_cached_config():
    """Settings and vocabulary are cached per process; tests may override env."""
    from bridge_engine.core.config import get_settings
    from bridge_engine.core.workflow_vocabulary import get_vocabulary

    get_settings.cache_clear()
    get_vocabulary.cache_clear()
    yield
    get_settings.cache_clear()
    get_vocabulary.cache_clear()


@pytest.fixture
def fake_store(monkeypatch):
    """In-memory task/relationship store wired into every module that reads it."""
    from tests.fakes.fake_store import FakeStore

    store = FakeStore()
    store.install(monkeypatch)
    return store
