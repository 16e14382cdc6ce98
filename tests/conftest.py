"""Pytest fixtures for askdocs tests."""

import json
import os
from typing import Callable, Iterable, List

import httpx
import pytest

# Set test environment
os.environ["ENVIRONMENT"] = "testing"
os.environ["BACKEND_URL"] = "http://backend.test"
os.environ["STORAGE_URL"] = "http://storage.test"

from askdocs.services.chat_client import ChatClient
from askdocs.services.config import Settings
from askdocs.services.history import InMemoryHistoryStore
from askdocs.services.normalizer import MessageRenderer


def sse(data: str, event: str = None) -> str:
    """One SSE frame"""
    lines = []
    if event:
        lines.append(f"event: {event}")
    for line in data.split("\n"):
        lines.append(f"data: {line}")
    return "\n".join(lines) + "\n\n"


def delta(content: str) -> str:
    """Chat-completion delta frame"""
    return sse(json.dumps({"choices": [{"delta": {"content": content}}]}))


async def _aiter(chunks: Iterable[bytes]):
    for chunk in chunks:
        yield chunk


def sse_response(chunks: List[bytes], status_code: int = 200) -> httpx.Response:
    """Streaming response whose body arrives in the given chunks"""
    return httpx.Response(
        status_code,
        headers={"content-type": "text/event-stream"},
        content=_aiter(chunks)
    )


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        BACKEND_URL="http://backend.test",
        STORAGE_URL="http://storage.test",
    )


@pytest.fixture
def renderer() -> MessageRenderer:
    return MessageRenderer()


@pytest.fixture
def history() -> InMemoryHistoryStore:
    return InMemoryHistoryStore()


@pytest.fixture
def make_client(settings, history) -> Callable[..., ChatClient]:
    """Build a ChatClient whose backend is a MockTransport handler."""
    def factory(handler, **overrides) -> ChatClient:
        client_settings = settings.model_copy(update=overrides) if overrides else settings
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return ChatClient(client_settings, http_client=http_client, history=history)
    return factory


@pytest.fixture
def end_to_end_body() -> bytes:
    """The canonical three-frame answer plus terminal marker"""
    return (
        delta("Hel")
        + delta("lo")
        + sse('{"sources":[{"fileName":"a.pdf","lineNumber":3}]}', event="done")
        + sse("[DONE]")
    ).encode("utf-8")
