"""Shared fakes for the widget tests."""
import asyncio
from types import SimpleNamespace
from typing import Any, Optional

import httpx
import pytest

from config import CompletionConfig, ElevenLabsConfig, RetryConfig


COMPLETIONS_URL = "https://api.groq.com/openai/v1/chat/completions"


def completion_response(content: Any) -> SimpleNamespace:
    """Shape of a chat.completions.create() result with one choice."""
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def status_error(cls, status: int, body: Optional[dict] = None):
    """Build a groq APIStatusError subclass the way the SDK does."""
    request = httpx.Request("POST", COMPLETIONS_URL)
    response = httpx.Response(status, request=request, json=body or {})
    return cls(f"Error code: {status}", response=response, body=body)


class FakeCompletions:
    """Scripted stand-in for AsyncGroq().chat.completions."""

    def __init__(self, *script: Any) -> None:
        self.script = list(script)
        self.calls: list[dict] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, BaseException):
            raise item
        return item


class FakeGroq:
    def __init__(self, *script: Any) -> None:
        self.chat = SimpleNamespace(completions=FakeCompletions(*script))

    @property
    def calls(self) -> list[dict]:
        return self.chat.completions.calls


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def completion_config():
    return CompletionConfig()


@pytest.fixture
def retry_config():
    return RetryConfig()


@pytest.fixture
def elevenlabs_config():
    return ElevenLabsConfig()


@pytest.fixture
def sleep():
    return RecordingSleep()


async def settle(rounds: int = 5) -> None:
    """Let pending callbacks and watcher tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
