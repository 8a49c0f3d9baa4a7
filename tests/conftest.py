"""Shared fixtures and test doubles for silicon_stream tests."""

import asyncio
from collections.abc import Sequence

import pytest

from silicon_stream.adapters import SamplingParams
from silicon_stream.conversation import ChatMessage, InMemoryConversationStore
from silicon_stream.coordinator import StreamingSessionCoordinator
from silicon_stream.exceptions import ConfigurationError
from silicon_stream.settings import StreamSettings
from silicon_stream.sinks import SessionRecord


class RecordingSink:
    """UI sink that records every callback."""

    def __init__(self):
        self.starts: list[str] = []
        self.deltas: list[str] = []
        self.refreshes: list[str] = []
        self.records: list[SessionRecord] = []

    def on_session_start(self, prompt: str) -> None:
        self.starts.append(prompt)

    def on_text(self, delta: str) -> None:
        self.deltas.append(delta)

    def on_refresh(self, text: str) -> None:
        self.refreshes.append(text)

    def on_finish(self, record: SessionRecord) -> None:
        self.records.append(record)

    @property
    def text(self) -> str:
        return "".join(self.deltas)


class ScriptedEngine:
    """Engine double yielding scripted fragments.

    ``hang_after`` blocks forever once that many fragments have been yielded,
    simulating a slow engine read that only cancellation can interrupt.
    ``error_after`` raises ``error`` after that many fragments. ``open_error``
    is raised from ``open_stream`` itself.
    """

    runtime_families = None

    def __init__(
        self,
        fragments: Sequence[str] = (),
        *,
        hang_after: int | None = None,
        error_after: int | None = None,
        error: BaseException | None = None,
        open_error: BaseException | None = None,
        delay: float = 0.0,
    ):
        self.fragments = list(fragments)
        self.hang_after = hang_after
        self.error_after = error_after
        self.error = error or RuntimeError("engine exploded")
        self.open_error = open_error
        self.delay = delay
        self.opened: list[dict] = []
        self.closed = 0
        self.waiting = asyncio.Event()

    async def open_stream(
        self,
        prompt: str,
        history: Sequence[ChatMessage],
        max_response_tokens: int,
        sampling: SamplingParams,
    ):
        self.opened.append(
            {
                "prompt": prompt,
                "history": list(history),
                "max_response_tokens": max_response_tokens,
                "sampling": sampling,
            }
        )
        if self.open_error is not None:
            raise self.open_error
        return self._iterate()

    async def _iterate(self):
        try:
            for index, fragment in enumerate(self.fragments):
                if self.hang_after is not None and index >= self.hang_after:
                    break
                if self.error_after is not None and index >= self.error_after:
                    raise self.error
                await asyncio.sleep(self.delay)
                yield fragment
            if self.hang_after is not None:
                self.waiting.set()
                await asyncio.Event().wait()
            if self.error_after is not None and self.error_after >= len(self.fragments):
                raise self.error
        finally:
            self.closed += 1


def make_coordinator(engine, *, model_id="lfm2-1.2b", settings=None, store=None, **kwargs):
    """Build a coordinator with a recording sink; returns (coordinator, store, sink)."""
    sink = RecordingSink()
    store = store or InMemoryConversationStore(model_id)
    coordinator = StreamingSessionCoordinator(
        engine,
        store,
        model_id=model_id,
        sink=sink,
        settings=settings or StreamSettings(),
        **kwargs,
    )
    return coordinator, store, sink


@pytest.fixture
def recording_sink():
    return RecordingSink()


@pytest.fixture
def config_error():
    return ConfigurationError("[SiliconStream] engine not loaded")
