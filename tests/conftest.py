"""Pytest configuration and fixtures."""

import os
from unittest.mock import AsyncMock, MagicMock

import pytest

# Set test environment variables before importing settings
os.environ.setdefault("LLM_PROVIDER", "openai")
os.environ.setdefault("OPENAI_API_KEY", "sk-test")
os.environ.setdefault("ANTHROPIC_API_KEY", "sk-ant-test")
os.environ.setdefault("OPENROUTER_API_KEY", "sk-or-test")
os.environ.setdefault("STORE_BACKEND", "memory")

from fiscalia.clients.base import ModelResponse  # noqa: E402
from fiscalia.orchestration.executor import ActionExecutor  # noqa: E402
from fiscalia.repository import (  # noqa: E402
    CatalogRepository,
    ContextRepository,
    FinancialRepository,
)
from fiscalia.store import InMemoryStore  # noqa: E402

USER_ID = "user-1"
OTHER_USER_ID = "user-2"


@pytest.fixture
def user_id():
    return USER_ID


@pytest.fixture
def store():
    """Fresh in-memory store per test."""
    return InMemoryStore()


@pytest.fixture
def financial(store):
    return FinancialRepository(store)


@pytest.fixture
def catalog(store):
    return CatalogRepository(store)


@pytest.fixture
def context(store, financial, catalog):
    return ContextRepository(store, financial, catalog)


@pytest.fixture
def executor(financial, catalog):
    return ActionExecutor(financial, catalog)


def model_reply(content: str) -> ModelResponse:
    """Build a provider response carrying ``content``."""
    return ModelResponse(content=content, stop_reason="end_turn", usage={}, model="test-model")


@pytest.fixture
def mock_model_client():
    """Model client whose ``generate`` returns a canned JSON reply."""
    client = MagicMock()
    client.generate = AsyncMock(
        return_value=model_reply('{"text": "Bonjour! Je suis là pour t\'aider.", "actions": []}')
    )
    client.close = AsyncMock()
    return client


@pytest.fixture
def mock_httpx_client():
    """Create a mock httpx AsyncClient."""
    client = AsyncMock()
    client.request = AsyncMock()
    client.post = AsyncMock()
    client.aclose = AsyncMock()
    client.is_closed = False
    return client
