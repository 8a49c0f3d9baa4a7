"""Read-only model catalog: context windows, runtime families and chat templates."""

from __future__ import annotations

import enum
from collections.abc import Iterable
from dataclasses import dataclass, field

GEMMA_SYSTEM_PROMPT = (
    "You are Gemma, an on-device assistant. Answer user questions directly with a short, "
    "factual reply. Do not repeat phrases or re-state that you are answering; simply "
    "provide the response and stop."
)
GEMMA_STOP_MARKERS = ("<end_of_turn>", "<start_of_turn>")


class RuntimeFamily(str, enum.Enum):
    """Backend family a model runs on."""

    LEAP = "leap"
    MLX = "mlx"
    APPLE_FM = "apple_fm"
    LLAMA_CPP = "llama_cpp"


@dataclass(frozen=True)
class ModelEntry:
    """One catalog row."""

    model_id: str
    display_name: str
    provider: str
    context_window: int
    runtime: RuntimeFamily
    system_prompt: str | None = None
    stop_markers: tuple[str, ...] = field(default_factory=tuple)


DEFAULT_ENTRIES: tuple[ModelEntry, ...] = (
    ModelEntry("lfm2-350m", "LFM2 350M", "LiquidAI", 4096, RuntimeFamily.LEAP),
    ModelEntry("lfm2-700m", "LFM2 700M", "LiquidAI", 4096, RuntimeFamily.LEAP),
    ModelEntry("lfm2-1.2b", "LFM2 1.2B", "LiquidAI", 4096, RuntimeFamily.LEAP),
    ModelEntry(
        "gemma3-270m",
        "Gemma 3 270M IT",
        "Google",
        8192,
        RuntimeFamily.MLX,
        system_prompt=GEMMA_SYSTEM_PROMPT,
        stop_markers=GEMMA_STOP_MARKERS,
    ),
    ModelEntry(
        "gemma3-1b",
        "Gemma 3 1B IT",
        "Google",
        8192,
        RuntimeFamily.MLX,
        system_prompt=GEMMA_SYSTEM_PROMPT,
        stop_markers=GEMMA_STOP_MARKERS,
    ),
    ModelEntry(
        "gemma3n-e2b",
        "Gemma 3n E2B IT",
        "Google",
        32_768,
        RuntimeFamily.MLX,
        system_prompt=GEMMA_SYSTEM_PROMPT,
        stop_markers=GEMMA_STOP_MARKERS,
    ),
    ModelEntry(
        "apple-fm-system",
        "Apple Foundation Model (system)",
        "Apple",
        4096,
        RuntimeFamily.APPLE_FM,
    ),
)


class ModelCatalog:
    """Lookup table keyed by model id."""

    def __init__(self, entries: Iterable[ModelEntry] = DEFAULT_ENTRIES) -> None:
        self._entries: dict[str, ModelEntry] = {}
        for entry in entries:
            if entry.context_window <= 0:
                raise ValueError(f"context_window must be > 0 for {entry.model_id!r}")
            self._entries[entry.model_id] = entry

    def entry(self, model_id: str) -> ModelEntry | None:
        return self._entries.get(model_id)

    def context_window(self, model_id: str) -> int | None:
        entry = self._entries.get(model_id)
        return None if entry is None else entry.context_window

    def runtime_family(self, model_id: str) -> RuntimeFamily | None:
        entry = self._entries.get(model_id)
        return None if entry is None else entry.runtime

    def all(self) -> list[ModelEntry]:
        return list(self._entries.values())

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._entries

    def __repr__(self) -> str:
        return f"ModelCatalog(entries={len(self._entries)})"
