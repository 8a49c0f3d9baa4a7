"""
Inference engine adapters — the opaque text-generation capability behind a session.

Each engine implements the ``InferenceEngine`` protocol: awaiting
``open_stream()`` validates configuration and returns an async iterator of
text fragments. Setup problems raise ``ConfigurationError`` from
``open_stream()`` itself, so a session never reaches streaming with a broken
engine; failures while iterating surface as ``EngineStreamError``.

Includes:
  - ``ReplayEngine``: replays scripted fragments (transcripts, demos, tests).
  - ``LlamaCppEngine``: streams from a llama.cpp server over HTTP (SSE).
  - ``AppleFMEngine``: streams from Apple Foundation Models on a worker thread.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import threading
from collections.abc import AsyncIterator, Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, Union, runtime_checkable

import httpx

from .catalog import RuntimeFamily
from .conversation import ChatMessage
from .exceptions import (
    ConfigurationError,
    EngineStreamError,
    ensure_model_available,
    require_apple_fm,
)

logger = logging.getLogger("silicon_stream.engine")

STREAM_FIRST_CHUNK_TIMEOUT_SECONDS = 25.0
STREAM_CHUNK_IDLE_TIMEOUT_SECONDS = 12.0
STREAM_WORKER_JOIN_TIMEOUT_SECONDS = 0.4
CHATML_END = "<|im_end|>"


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SamplingParams:
    """Sampling knobs passed through to the engine."""

    temperature: float = 0.7
    top_p: float = 0.95
    top_k: int = 40
    repetition_penalty: float = 1.1
    repetition_context_size: int = 64
    max_tokens_cap: int | None = None

    @classmethod
    def for_family(cls, family: RuntimeFamily | None) -> SamplingParams:
        if family is RuntimeFamily.MLX:
            # Focused answers for small Gemma models.
            return cls(
                temperature=0.35,
                top_p=0.85,
                repetition_penalty=1.15,
                repetition_context_size=128,
                max_tokens_cap=256,
            )
        return cls()

    def cap(self, max_response_tokens: int) -> int:
        limit = max(max_response_tokens, 1)
        if self.max_tokens_cap is not None:
            limit = min(limit, self.max_tokens_cap)
        return limit


@runtime_checkable
class InferenceEngine(Protocol):
    """Common protocol for all inference engines."""

    runtime_families: frozenset[RuntimeFamily] | None

    async def open_stream(
        self,
        prompt: str,
        history: Sequence[ChatMessage],
        max_response_tokens: int,
        sampling: SamplingParams,
    ) -> AsyncIterator[str]: ...


def history_with_prompt(history: Sequence[ChatMessage], prompt: str) -> list[ChatMessage]:
    """Make sure the conversation ends with the prompt as the latest user turn."""
    messages = list(history)
    if not messages or messages[-1].role != "user" or messages[-1].content != prompt:
        messages.append(ChatMessage(role="user", content=prompt))
    return messages


# ---------------------------------------------------------------------------
# ReplayEngine
# ---------------------------------------------------------------------------

FragmentSource = Union[Iterable[str], Callable[[str], Iterable[str]]]


class ReplayEngine:
    """Replays a fixed fragment script as a token stream.

    *fragments* is either an iterable of strings, replayed for every prompt, or
    a callable mapping the prompt to its fragments. ``max_response_tokens`` is
    honored by counting fragments.
    """

    runtime_families: frozenset[RuntimeFamily] | None = None

    def __init__(self, fragments: FragmentSource, delay: float = 0.0) -> None:
        if delay < 0:
            raise ValueError("delay must be >= 0")
        self._fragments = fragments if callable(fragments) else list(fragments)
        self.delay = delay
        self.requests: list[tuple[str, int]] = []

    async def preload(self) -> None:
        return None

    async def open_stream(
        self,
        prompt: str,
        history: Sequence[ChatMessage],
        max_response_tokens: int,
        sampling: SamplingParams,
    ) -> AsyncIterator[str]:
        limit = sampling.cap(max_response_tokens)
        self.requests.append((prompt, limit))
        if callable(self._fragments):
            fragments = list(self._fragments(prompt))
        else:
            fragments = list(self._fragments)
        return self._iterate(fragments, limit)

    async def _iterate(self, fragments: list[str], limit: int) -> AsyncIterator[str]:
        for index, fragment in enumerate(fragments):
            if index >= limit:
                logger.debug("[SiliconStream Replay] Token limit %d reached.", limit)
                return
            if self.delay:
                await asyncio.sleep(self.delay)
            else:
                await asyncio.sleep(0)
            yield str(fragment)

    def __repr__(self) -> str:
        return f"ReplayEngine(delay={self.delay})"


# ---------------------------------------------------------------------------
# LlamaCppEngine
# ---------------------------------------------------------------------------


class LlamaCppEngine:
    """Streams completions from a llama.cpp ``/completion`` endpoint.

    Messages are rendered with the ChatML template; ``<|im_end|>`` is passed as a
    server-side stop word.
    """

    runtime_families: frozenset[RuntimeFamily] | None = frozenset(
        {RuntimeFamily.LLAMA_CPP, RuntimeFamily.LEAP, RuntimeFamily.MLX}
    )

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 300.0,
        slot_id: int | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.slot_id = slot_id
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @staticmethod
    def format_messages(messages: Sequence[ChatMessage]) -> str:
        parts = [f"<|im_start|>{m.role}\n{m.content}{CHATML_END}" for m in messages]
        parts.append("<|im_start|>assistant\n")
        return "\n".join(parts)

    async def preload(self) -> None:
        try:
            response = await self._client.get(f"{self.base_url}/health", timeout=5.0)
        except httpx.HTTPError as exc:
            raise ConfigurationError(
                f"[SiliconStream] llama.cpp server unreachable at {self.base_url}: {exc}"
            ) from exc
        if response.status_code != 200:
            raise ConfigurationError(
                f"[SiliconStream] llama.cpp server at {self.base_url} is not healthy "
                f"(HTTP {response.status_code})."
            )

    async def open_stream(
        self,
        prompt: str,
        history: Sequence[ChatMessage],
        max_response_tokens: int,
        sampling: SamplingParams,
    ) -> AsyncIterator[str]:
        if not self.base_url.startswith(("http://", "https://")):
            raise ConfigurationError(f"[SiliconStream] Invalid llama.cpp URL: {self.base_url!r}")

        payload: dict[str, Any] = {
            "prompt": self.format_messages(history_with_prompt(history, prompt)),
            "n_predict": sampling.cap(max_response_tokens),
            "cache_prompt": True,
            "temperature": sampling.temperature,
            "top_p": sampling.top_p,
            "top_k": sampling.top_k,
            "repeat_penalty": sampling.repetition_penalty,
            "repeat_last_n": sampling.repetition_context_size,
            "stream": True,
            "stop": [CHATML_END],
        }
        if self.slot_id is not None:
            payload["id_slot"] = self.slot_id
        return self._iterate(payload)

    async def _iterate(self, payload: dict[str, Any]) -> AsyncIterator[str]:
        try:
            async with self._client.stream(
                "POST", f"{self.base_url}/completion", json=payload
            ) as response:
                if response.status_code != 200:
                    await response.aread()
                    raise EngineStreamError(
                        f"llama.cpp returned HTTP {response.status_code}: {response.text[:200]}",
                        engine="llama_cpp",
                    )
                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    data_str = line[6:].strip()
                    if data_str == "[DONE]":
                        return
                    try:
                        data = json.loads(data_str)
                    except json.JSONDecodeError:
                        logger.debug("[SiliconStream llama.cpp] Skipping malformed event.")
                        continue

                    content = data.get("content", "")
                    if content:
                        yield content
                    if data.get("stop"):
                        logger.debug(
                            "[SiliconStream llama.cpp] Server stop (type=%s).",
                            data.get("stop_type", ""),
                        )
                        return
        except httpx.HTTPError as exc:
            raise EngineStreamError(f"llama.cpp stream failed: {exc}", engine="llama_cpp") from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def __repr__(self) -> str:
        return f"LlamaCppEngine(base_url={self.base_url!r}, slot_id={self.slot_id})"


# ---------------------------------------------------------------------------
# AppleFMEngine
# ---------------------------------------------------------------------------


def snapshot_delta(previous: str, snapshot: str) -> str:
    """Return the new text in a cumulative snapshot.

    The SDK streams whole-response snapshots. When a snapshot rewrites earlier
    text only the part past the common prefix is new.
    """
    if snapshot.startswith(previous):
        return snapshot[len(previous) :]
    common = 0
    for old_ch, new_ch in zip(previous, snapshot):
        if old_ch != new_ch:
            break
        common += 1
    return snapshot[max(common, len(previous)) :]


def render_transcript(messages: Sequence[ChatMessage]) -> str:
    lines: list[str] = []
    for message in messages:
        speaker = "USER" if message.role == "user" else "ASSISTANT"
        lines.append(speaker)
        lines.append(message.content.strip())
        lines.append("")
    return "\n".join(lines).strip()


class AppleFMEngine:
    """Streams responses from the on-device Apple Foundation Model.

    The SDK's streaming call runs on a dedicated worker thread with its own event
    loop; snapshots are forwarded to the caller's loop through an unbounded
    ``asyncio.Queue`` so cancelling the consumer never waits on the SDK.
    """

    runtime_families: frozenset[RuntimeFamily] | None = frozenset({RuntimeFamily.APPLE_FM})

    def __init__(
        self,
        instructions: str = "You are a helpful local-first assistant.",
        *,
        first_chunk_timeout: float = STREAM_FIRST_CHUNK_TIMEOUT_SECONDS,
        idle_timeout: float = STREAM_CHUNK_IDLE_TIMEOUT_SECONDS,
    ) -> None:
        self.instructions = instructions
        self.first_chunk_timeout = first_chunk_timeout
        self.idle_timeout = idle_timeout
        self._fm: Any = None
        self._model: Any = None

    def _ensure_model(self) -> tuple[Any, Any]:
        if self._model is None:
            fm = require_apple_fm("AppleFMEngine")
            model = fm.SystemLanguageModel()
            ensure_model_available(model, context="AppleFMEngine")
            self._fm, self._model = fm, model
        return self._fm, self._model

    async def preload(self) -> None:
        self._ensure_model()

    async def open_stream(
        self,
        prompt: str,
        history: Sequence[ChatMessage],
        max_response_tokens: int,
        sampling: SamplingParams,
    ) -> AsyncIterator[str]:
        fm, model = self._ensure_model()

        messages = history_with_prompt(history, prompt)
        system = [m.content for m in messages if m.role == "system"]
        turns = [m for m in messages if m.role != "system"]
        instructions = "\n\n".join([self.instructions, *system]).strip()
        context = render_transcript(turns[:-1])
        full_prompt = (
            f"Conversation Context:\n{context}\n\nRespond to the latest message:\n{prompt}"
            if context
            else prompt
        )
        limit = sampling.cap(max_response_tokens)
        return self._iterate(fm, model, instructions, full_prompt, limit)

    async def _iterate(
        self, fm: Any, model: Any, instructions: str, prompt: str, limit: int
    ) -> AsyncIterator[str]:
        ui_loop = asyncio.get_running_loop()
        event_queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()
        cancel_event = threading.Event()
        worker_done = threading.Event()

        def producer_sync() -> None:
            async def producer() -> None:
                session = fm.LanguageModelSession(model=model, instructions=instructions)
                try:
                    async for snapshot in session.stream_response(prompt):
                        if cancel_event.is_set():
                            break
                        ui_loop.call_soon_threadsafe(
                            event_queue.put_nowait, ("chunk", str(snapshot))
                        )
                except Exception as exc:
                    ui_loop.call_soon_threadsafe(event_queue.put_nowait, ("error", exc))
                    return
                ui_loop.call_soon_threadsafe(event_queue.put_nowait, ("done", None))

            try:
                asyncio.run(producer())
            except Exception as exc:
                with contextlib.suppress(RuntimeError):
                    ui_loop.call_soon_threadsafe(event_queue.put_nowait, ("error", exc))
            finally:
                worker_done.set()

        worker_thread = threading.Thread(
            target=producer_sync,
            name="silicon-stream-worker",
            daemon=True,
        )
        worker_thread.start()

        previous = ""
        emitted = 0
        try:
            while True:
                timeout = self.idle_timeout if previous else self.first_chunk_timeout
                try:
                    kind, payload = await asyncio.wait_for(event_queue.get(), timeout=timeout)
                except TimeoutError as exc:
                    label = "response stream" if previous else "first response chunk"
                    raise EngineStreamError(
                        f"Timed out waiting for {label} after {timeout:.0f}s.", engine="apple_fm"
                    ) from exc
                if kind == "chunk":
                    delta = snapshot_delta(previous, payload)
                    previous = payload
                    if not delta:
                        continue
                    yield delta
                    emitted += 1
                    if emitted >= limit:
                        logger.debug("[SiliconStream AppleFM] Token limit %d reached.", limit)
                        return
                    continue
                if kind == "error":
                    raise EngineStreamError(
                        f"Foundation Model stream failed: {payload}", engine="apple_fm"
                    ) from payload
                return
        finally:
            cancel_event.set()
            with contextlib.suppress(Exception):
                await asyncio.to_thread(worker_done.wait, STREAM_WORKER_JOIN_TIMEOUT_SECONDS)

    def __repr__(self) -> str:
        return f"AppleFMEngine(loaded={self._model is not None})"
