"""Terminal session outcomes: exactly one is produced per session."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Union

from .stats import TokenStats


class SessionState(str, enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    STOPPED_BY_GUARD = "stopped_by_guard"
    CANCELLED_BY_USER = "cancelled_by_user"
    CANCELLED_BY_SUPERSESSION = "cancelled_by_supersession"
    FAILED = "failed"


@dataclass(frozen=True)
class Completed:
    token_count: int
    stats: TokenStats
    text: str = ""

    kind = SessionState.COMPLETED


@dataclass(frozen=True)
class StoppedByGuard:
    """Intentionally truncated completion; ``reason`` is for diagnostics only."""

    reason: str
    evidence_count: int
    sample: str
    stats: TokenStats
    text: str = ""

    kind = SessionState.STOPPED_BY_GUARD


@dataclass(frozen=True)
class CancelledByUser:
    partial_text: str
    user_initiated: bool
    stats: TokenStats

    kind = SessionState.CANCELLED_BY_USER


@dataclass(frozen=True)
class CancelledBySupersession:
    stats: TokenStats

    kind = SessionState.CANCELLED_BY_SUPERSESSION


@dataclass(frozen=True)
class Failed:
    error: BaseException = field(compare=False)
    message: str
    stats: TokenStats

    kind = SessionState.FAILED


StreamOutcome = Union[Completed, StoppedByGuard, CancelledByUser, CancelledBySupersession, Failed]
