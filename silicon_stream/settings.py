"""
Runtime settings for streaming sessions.

Values come from keyword arguments, or from ``SILICON_STREAM_*`` environment
variables via ``StreamSettings.from_env()``:

    SILICON_STREAM_MODEL                    default model id
    SILICON_STREAM_REFRESH_INTERVAL         UI refresh ticker period (seconds)
    SILICON_STREAM_PROMPT_ECHO_THRESHOLD    guard: prompt echoes before stopping
    SILICON_STREAM_DUPLICATE_LINE_THRESHOLD guard: identical trailing lines before stopping
    SILICON_STREAM_MAX_SENTENCES            guard: sentence ceiling
    SILICON_STREAM_MAX_CHARACTERS           guard: hard character ceiling
    SILICON_STREAM_STOP_MARKERS             comma-separated stop markers (overrides the catalog)
"""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from .exceptions import ConfigurationError
from .guard import GuardConfig

ENV_PREFIX = "SILICON_STREAM_"
DEFAULT_MODEL_ID = "gemma3-1b"
DEFAULT_REFRESH_INTERVAL = 0.5
DEFAULT_FAILURE_TEMPLATE = (
    "Error generating response: {error}. "
    "Please ensure the model is properly downloaded and loaded."
)

_GUARD_ENV_FIELDS = {
    "PROMPT_ECHO_THRESHOLD": "prompt_echo_threshold",
    "DUPLICATE_LINE_THRESHOLD": "duplicate_line_threshold",
    "MAX_SENTENCES": "max_sentences",
    "MAX_CHARACTERS": "max_characters",
}


@dataclass(frozen=True)
class StreamSettings:
    model_id: str = DEFAULT_MODEL_ID
    refresh_interval: float = DEFAULT_REFRESH_INTERVAL
    guard: GuardConfig = field(default_factory=GuardConfig)
    stop_markers: tuple[str, ...] | None = None
    failure_template: str = DEFAULT_FAILURE_TEMPLATE

    def __post_init__(self) -> None:
        if not self.model_id:
            raise ConfigurationError("[SiliconStream] model_id must not be empty.")
        if self.refresh_interval <= 0:
            raise ConfigurationError("[SiliconStream] refresh_interval must be > 0.")
        if "{error}" not in self.failure_template:
            raise ConfigurationError(
                "[SiliconStream] failure_template must contain an '{error}' placeholder."
            )

    def failure_message(self, error: BaseException) -> str:
        detail = str(error).strip().rstrip(".") or type(error).__name__
        return self.failure_template.format(error=detail)

    def with_overrides(self, **changes) -> StreamSettings:
        """Return a copy with non-``None`` overrides applied."""
        return dataclasses.replace(self, **{k: v for k, v in changes.items() if v is not None})

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> StreamSettings:
        env = os.environ if environ is None else environ

        def read(name: str) -> str | None:
            value = env.get(ENV_PREFIX + name)
            if value is None or not value.strip():
                return None
            return value.strip()

        kwargs: dict = {}
        model_id = read("MODEL")
        if model_id is not None:
            kwargs["model_id"] = model_id

        interval = read("REFRESH_INTERVAL")
        if interval is not None:
            try:
                kwargs["refresh_interval"] = float(interval)
            except ValueError as exc:
                raise ConfigurationError(
                    f"[SiliconStream] {ENV_PREFIX}REFRESH_INTERVAL must be a number, "
                    f"got {interval!r}."
                ) from exc

        guard_changes: dict[str, int] = {}
        for suffix, field_name in _GUARD_ENV_FIELDS.items():
            raw = read(suffix)
            if raw is None:
                continue
            try:
                guard_changes[field_name] = int(raw)
            except ValueError as exc:
                raise ConfigurationError(
                    f"[SiliconStream] {ENV_PREFIX}{suffix} must be an integer, got {raw!r}."
                ) from exc
        if guard_changes:
            try:
                kwargs["guard"] = GuardConfig(**guard_changes)
            except ValueError as exc:
                raise ConfigurationError(f"[SiliconStream] Invalid guard settings: {exc}") from exc

        markers = read("STOP_MARKERS")
        if markers is not None:
            kwargs["stop_markers"] = tuple(m.strip() for m in markers.split(",") if m.strip())

        return cls(**kwargs)
