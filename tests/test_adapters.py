"""
Tests for silicon_stream.adapters.

Covers:
  - SamplingParams per runtime family and token caps
  - ReplayEngine fragment scripts and limits
  - LlamaCppEngine SSE parsing, payload, and error wrapping (httpx.MockTransport)
  - AppleFMEngine snapshot-to-delta streaming on a worker thread (mocked SDK)
  - Setup errors when the SDK or model is unavailable
"""

import importlib
import json
from unittest.mock import MagicMock, patch

import httpx
import pytest

from silicon_stream.adapters import (
    AppleFMEngine,
    InferenceEngine,
    LlamaCppEngine,
    ReplayEngine,
    SamplingParams,
    history_with_prompt,
    render_transcript,
    snapshot_delta,
)
from silicon_stream.catalog import RuntimeFamily
from silicon_stream.conversation import ChatMessage
from silicon_stream.exceptions import (
    AppleFMSetupError,
    ConfigurationError,
    EngineStreamError,
    require_apple_fm,
)


async def collect(stream):
    return [piece async for piece in stream]


# ========================================================================
# SamplingParams & helpers
# ========================================================================


class TestSamplingParams:
    def test_mlx_family_uses_focused_sampling(self):
        params = SamplingParams.for_family(RuntimeFamily.MLX)
        assert params.temperature == 0.35
        assert params.top_p == 0.85
        assert params.repetition_penalty == 1.15
        assert params.repetition_context_size == 128
        assert params.cap(512) == 256

    def test_other_families_use_defaults(self):
        assert SamplingParams.for_family(RuntimeFamily.LEAP) == SamplingParams()
        assert SamplingParams.for_family(None) == SamplingParams()

    def test_cap_is_at_least_one(self):
        assert SamplingParams().cap(0) == 1
        assert SamplingParams().cap(1228) == 1228


class TestHistoryHelpers:
    def test_prompt_appended_when_missing(self):
        history = [ChatMessage(role="assistant", content="earlier")]
        messages = history_with_prompt(history, "new")
        assert [m.content for m in messages] == ["earlier", "new"]
        assert len(history) == 1

    def test_prompt_not_duplicated(self):
        history = [ChatMessage(role="user", content="same")]
        assert len(history_with_prompt(history, "same")) == 1

    def test_snapshot_delta(self):
        assert snapshot_delta("", "Hel") == "Hel"
        assert snapshot_delta("Hel", "Hello") == "lo"
        assert snapshot_delta("Hello", "Hello") == ""
        assert snapshot_delta("Hello", "Help me") == "me"

    def test_render_transcript(self):
        text = render_transcript(
            [
                ChatMessage(role="user", content=" hi "),
                ChatMessage(role="assistant", content="hello"),
            ]
        )
        assert text == "USER\nhi\n\nASSISTANT\nhello"


# ========================================================================
# ReplayEngine
# ========================================================================


class TestReplayEngine:
    async def test_replays_fragments(self):
        engine = ReplayEngine(["a", "b", "c"])
        assert isinstance(engine, InferenceEngine)
        stream = await engine.open_stream("p", [], 10, SamplingParams())
        assert await collect(stream) == ["a", "b", "c"]
        assert engine.requests == [("p", 10)]

    async def test_respects_token_limit(self):
        engine = ReplayEngine(["a", "b", "c"])
        stream = await engine.open_stream("p", [], 2, SamplingParams())
        assert await collect(stream) == ["a", "b"]

    async def test_callable_script(self):
        engine = ReplayEngine(lambda prompt: [prompt.upper(), "!"])
        stream = await engine.open_stream("hey", [], 10, SamplingParams())
        assert await collect(stream) == ["HEY", "!"]

    def test_negative_delay_rejected(self):
        with pytest.raises(ValueError):
            ReplayEngine([], delay=-1)


# ========================================================================
# LlamaCppEngine
# ========================================================================


def sse_body(*events):
    return "".join(f"data: {json.dumps(event)}\n\n" for event in events).encode()


class TestLlamaCppEngine:
    async def test_streams_content_until_stop(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["payload"] = json.loads(request.content)
            return httpx.Response(
                200,
                content=sse_body(
                    {"content": "Hel"},
                    {"content": "lo"},
                    {"content": "", "stop": True, "stop_type": "eos"},
                    {"content": "after stop"},
                ),
            )

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        engine = LlamaCppEngine("http://llama.local:8000/", client=client)
        history = [ChatMessage(role="system", content="Be brief.")]

        sampling = SamplingParams.for_family(RuntimeFamily.MLX)
        stream = await engine.open_stream("Hi", history, 64, sampling)
        assert await collect(stream) == ["Hel", "lo"]

        payload = seen["payload"]
        assert seen["url"] == "http://llama.local:8000/completion"
        assert payload["stream"] is True
        assert payload["n_predict"] == 64
        assert payload["temperature"] == 0.35
        assert payload["repeat_penalty"] == 1.15
        assert payload["stop"] == ["<|im_end|>"]
        assert payload["prompt"] == (
            "<|im_start|>system\nBe brief.<|im_end|>\n"
            "<|im_start|>user\nHi<|im_end|>\n"
            "<|im_start|>assistant\n"
        )
        await client.aclose()

    async def test_skips_malformed_and_non_data_lines(self):
        body = b": keep-alive\n\ndata: not-json\n\ndata: {\"content\": \"ok\"}\n\ndata: [DONE]\n\n"
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, content=body))
        )
        engine = LlamaCppEngine(client=client)
        stream = await engine.open_stream("Hi", [], 16, SamplingParams())
        assert await collect(stream) == ["ok"]

    async def test_http_error_status_raises_stream_error(self):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(503, text="busy"))
        )
        engine = LlamaCppEngine(client=client)
        stream = await engine.open_stream("Hi", [], 16, SamplingParams())
        with pytest.raises(EngineStreamError, match="HTTP 503"):
            await collect(stream)

    async def test_transport_error_is_wrapped(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        engine = LlamaCppEngine(client=client)
        stream = await engine.open_stream("Hi", [], 16, SamplingParams())
        with pytest.raises(EngineStreamError) as exc_info:
            await collect(stream)
        assert exc_info.value.engine == "llama_cpp"

    async def test_invalid_url_is_configuration_error(self):
        engine = LlamaCppEngine("llama.local:8000", client=httpx.AsyncClient())
        with pytest.raises(ConfigurationError):
            await engine.open_stream("Hi", [], 16, SamplingParams())

    async def test_preload_checks_health(self):
        def handler(request):
            return httpx.Response(200 if request.url.path == "/health" else 404)

        engine = LlamaCppEngine(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        await engine.preload()

        unhealthy = LlamaCppEngine(
            client=httpx.AsyncClient(
                transport=httpx.MockTransport(lambda request: httpx.Response(503))
            )
        )
        with pytest.raises(ConfigurationError, match="not healthy"):
            await unhealthy.preload()


# ========================================================================
# AppleFMEngine
# ========================================================================


def make_fm_module(snapshots=(), *, available=True, error=None):
    """Mock apple_fm_sdk module whose session streams cumulative snapshots."""
    fm = MagicMock()
    model = MagicMock()
    model.is_available.return_value = (available, None if available else "disabled")
    fm.SystemLanguageModel.return_value = model
    sessions = []

    class FakeSession:
        def __init__(self, model=None, instructions=None):
            self.model = model
            self.instructions = instructions
            self.prompts = []
            sessions.append(self)

        async def stream_response(self, prompt):
            self.prompts.append(prompt)
            for snapshot in snapshots:
                yield snapshot
            if error is not None:
                raise error

    fm.LanguageModelSession = FakeSession
    fm.sessions = sessions
    return fm


class TestAppleFMEngine:
    async def test_converts_snapshots_to_deltas(self):
        fm = make_fm_module(["Hel", "Hello", "Hello there"])
        with patch("silicon_stream.adapters.require_apple_fm", return_value=fm):
            engine = AppleFMEngine(instructions="Base.")
            history = [
                ChatMessage(role="system", content="Extra rules."),
                ChatMessage(role="user", content="earlier"),
                ChatMessage(role="assistant", content="reply"),
                ChatMessage(role="user", content="Greet me"),
            ]
            stream = await engine.open_stream("Greet me", history, 100, SamplingParams())
            assert await collect(stream) == ["Hel", "lo", " there"]

        session = fm.sessions[0]
        assert session.instructions == "Base.\n\nExtra rules."
        assert session.prompts[0].startswith("Conversation Context:\nUSER\nearlier")
        assert session.prompts[0].endswith("Respond to the latest message:\nGreet me")

    async def test_first_turn_sends_bare_prompt(self):
        fm = make_fm_module(["Hi"])
        with patch("silicon_stream.adapters.require_apple_fm", return_value=fm):
            engine = AppleFMEngine()
            stream = await engine.open_stream("Hello", [], 100, SamplingParams())
            assert await collect(stream) == ["Hi"]
        assert fm.sessions[0].prompts == ["Hello"]

    async def test_stops_at_token_limit(self):
        fm = make_fm_module(["a", "ab", "abc", "abcd"])
        with patch("silicon_stream.adapters.require_apple_fm", return_value=fm):
            engine = AppleFMEngine()
            stream = await engine.open_stream("p", [], 2, SamplingParams())
            assert await collect(stream) == ["a", "b"]

    async def test_stream_error_is_wrapped(self):
        fm = make_fm_module(["partial"], error=RuntimeError("guardrail violation"))
        with patch("silicon_stream.adapters.require_apple_fm", return_value=fm):
            engine = AppleFMEngine()
            stream = await engine.open_stream("p", [], 10, SamplingParams())
            with pytest.raises(EngineStreamError, match="guardrail violation"):
                await collect(stream)

    async def test_unavailable_model_is_setup_error(self):
        fm = make_fm_module(available=False)
        with patch("silicon_stream.adapters.require_apple_fm", return_value=fm):
            engine = AppleFMEngine()
            with pytest.raises(AppleFMSetupError, match="not available"):
                await engine.open_stream("p", [], 10, SamplingParams())

    def test_missing_sdk_is_setup_error(self):
        with patch.object(importlib, "import_module", side_effect=ImportError("no sdk")):
            with pytest.raises(AppleFMSetupError, match="apple-fm-sdk"):
                require_apple_fm("AppleFMEngine")

    def test_setup_error_is_configuration_error(self):
        assert issubclass(AppleFMSetupError, ConfigurationError)
