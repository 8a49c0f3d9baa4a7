"""
Error taxonomy for SiliconStream.

Configuration problems are raised before a session reaches streaming; engine
failures raised mid-stream are wrapped in ``EngineStreamError``. Cancellation is
never represented here; it travels as ``asyncio.CancelledError`` and is mapped
to a session outcome by the coordinator.
"""

from __future__ import annotations

import importlib
from typing import Any

_INSTALL_HINT = (
    "The Apple Foundation Models SDK must be installed manually.\n"
    "Please follow the installation guide: https://github.com/adpena/silicon-refinery#installation"
)


class SiliconStreamError(Exception):
    """Base class for every error raised by silicon_stream."""


class ConfigurationError(SiliconStreamError):
    """Missing model metadata, unsupported runtime or unusable settings."""


class AppleFMSetupError(ConfigurationError):
    """The Apple Foundation Models SDK or its system model is not usable."""


class EngineStreamError(SiliconStreamError):
    """The inference engine failed while producing fragments."""

    def __init__(self, message: str, *, engine: str | None = None) -> None:
        super().__init__(message)
        self.engine = engine


def require_apple_fm(context: str = "silicon_stream") -> Any:
    """Import ``apple_fm_sdk`` or raise a readable setup error."""
    try:
        return importlib.import_module("apple_fm_sdk")
    except ImportError as exc:
        raise AppleFMSetupError(
            f"[SiliconStream] '{context}' requires 'apple-fm-sdk', which is not installed.\n"
            f"{_INSTALL_HINT}"
        ) from exc


def ensure_model_available(model: Any, context: str = "silicon_stream") -> None:
    """Raise ``AppleFMSetupError`` when the system language model reports unavailable."""
    try:
        available, reason = model.is_available()
    except Exception as exc:
        raise AppleFMSetupError(
            f"[SiliconStream] '{context}' could not query model availability: {exc}"
        ) from exc
    if not available:
        raise AppleFMSetupError(
            f"[SiliconStream] '{context}' cannot run: Foundation Model is not available ({reason})."
        )
