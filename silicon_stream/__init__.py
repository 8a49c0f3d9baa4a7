"""
SiliconStream: streaming sessions for local text-generation engines.

Coordinates one generation per conversation on top of an on-device engine,
adding what the engine does not provide: context-window budgeting, stop-marker
scanning across fragment boundaries, runaway-generation guarding, and a clean
terminal state on every exit path (completion, cancellation, supersession, or
failure).
"""

from .adapters import AppleFMEngine, InferenceEngine, LlamaCppEngine, ReplayEngine, SamplingParams
from .budget import ContextBudgeter, GenerationBudget, estimate_token_count
from .catalog import ModelCatalog, ModelEntry, RuntimeFamily
from .conversation import ChatMessage, Conversation, ConversationStore, InMemoryConversationStore
from .coordinator import Session, StreamingSessionCoordinator
from .exceptions import AppleFMSetupError, ConfigurationError, EngineStreamError, SiliconStreamError
from .guard import GuardConfig, RepetitionGuard
from .outcomes import (
    CancelledBySupersession,
    CancelledByUser,
    Completed,
    Failed,
    SessionState,
    StoppedByGuard,
    StreamOutcome,
)
from .scanner import ScanResult, StopSequenceScanner
from .settings import StreamSettings
from .sinks import NullSink, SessionRecord, TerminalSink, UISink
from .stats import TokenStats, calculate_token_stats

# Note: the Apple Foundation Models SDK is imported lazily by AppleFMEngine.

__all__ = [
    "StreamingSessionCoordinator",
    "Session",
    "SessionState",
    "StreamOutcome",
    "Completed",
    "StoppedByGuard",
    "CancelledByUser",
    "CancelledBySupersession",
    "Failed",
    "ContextBudgeter",
    "GenerationBudget",
    "estimate_token_count",
    "StopSequenceScanner",
    "ScanResult",
    "RepetitionGuard",
    "GuardConfig",
    "TokenStats",
    "calculate_token_stats",
    "ModelCatalog",
    "ModelEntry",
    "RuntimeFamily",
    "ChatMessage",
    "Conversation",
    "ConversationStore",
    "InMemoryConversationStore",
    "InferenceEngine",
    "SamplingParams",
    "ReplayEngine",
    "LlamaCppEngine",
    "AppleFMEngine",
    "UISink",
    "SessionRecord",
    "NullSink",
    "TerminalSink",
    "StreamSettings",
    "SiliconStreamError",
    "ConfigurationError",
    "EngineStreamError",
    "AppleFMSetupError",
]
