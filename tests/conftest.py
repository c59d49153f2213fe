"""
Pytest configuration for the parley test suite.

Provides settings that ignore the developer's environment, and small fakes for
the streaming SDK objects the providers consume.
"""

from __future__ import annotations

import asyncio
import os
from typing import Any, Callable, Iterable
from unittest.mock import AsyncMock

import pytest

from parley.config import ModelConfig, Settings


class FakeSDKStream:
    """Async-iterable stand-in for an SDK streaming response.

    Items that are exceptions are raised instead of yielded.
    """

    def __init__(self, events: Iterable[Any]) -> None:
        self._events = list(events)
        self.close = AsyncMock()

    def __aiter__(self) -> "FakeSDKStream":
        return self

    async def __anext__(self) -> Any:
        if not self._events:
            raise StopAsyncIteration
        event = self._events.pop(0)
        if isinstance(event, BaseException):
            raise event
        return event


class StallingSDKStream(FakeSDKStream):
    """Fake SDK stream that never returns once its scripted events run out."""

    async def __anext__(self) -> Any:
        if not self._events:
            await asyncio.Event().wait()
        return await super().__anext__()


@pytest.fixture
def settings(monkeypatch: pytest.MonkeyPatch) -> Settings:
    """Settings with test credentials and no environment or .env influence."""
    for name in list(os.environ):
        if name.startswith("PARLEY_"):
            monkeypatch.delenv(name, raising=False)
    return Settings(
        _env_file=None,
        openai={"api_key": "sk-test"},
        anthropic={"api_key": "sk-ant-test"},
        models=[
            ModelConfig(id="gpt-4o", temperature=0.3, max_tokens=1024),
            ModelConfig(
                id="o4-mini",
                is_reasoning_model=True,
                reasoning_effort="high",
                max_completion_tokens=8000,
            ),
            ModelConfig(id="claude-3-7-sonnet-latest", provider="anthropic", temperature=0.2),
        ],
    )


@pytest.fixture
def make_stream() -> Callable[..., FakeSDKStream]:
    """Factory for fake SDK streams: ``make_stream(event, event, ...)``."""

    def _make(*events: Any) -> FakeSDKStream:
        return FakeSDKStream(events)

    return _make


@pytest.fixture
def make_stalling_stream() -> Callable[..., StallingSDKStream]:
    """Factory for fake SDK streams that hang after their scripted events."""

    def _make(*events: Any) -> StallingSDKStream:
        return StallingSDKStream(events)

    return _make


@pytest.fixture
def anyio_backend() -> str:
    """Run ``@pytest.mark.anyio`` tests on asyncio, the only loop parley targets."""
    return "asyncio"
