"""
Runaway-generation guard.

Small local models loop, copy the prompt back, or ramble, and the engine only
knows about raw token limits. ``RepetitionGuard`` re-inspects the whole
response after every emitted piece of text and tells the coordinator when to
cut the stream short.

Checks, in order:
  - promptRepeat:  the normalized prompt occurs N times in the normalized response
  - lineRepeat:    the last non-empty line (>= 8 chars) closes a run of N identical lines
  - sentenceLimit: N or more sentences once the response is longer than 80 chars
  - lengthLimit:   raw response length reached the hard character ceiling
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Union

_WHITESPACE_RUN = re.compile(r"\s+")
_SENTENCE_SPLIT = re.compile(r"[.!?]")


@dataclass(frozen=True)
class GuardConfig:
    """Heuristic thresholds; empirical tuning constants, not invariants."""

    prompt_echo_threshold: int = 3
    duplicate_line_threshold: int = 4
    min_duplicate_line_length: int = 8
    max_sentences: int = 3
    sentence_min_characters: int = 80
    max_characters: int = 1200
    sample_length: int = 160

    def __post_init__(self) -> None:
        for name in (
            "prompt_echo_threshold",
            "duplicate_line_threshold",
            "max_sentences",
            "max_characters",
            "sample_length",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if self.min_duplicate_line_length < 0 or self.sentence_min_characters < 0:
            raise ValueError("length thresholds must be >= 0")


@dataclass(frozen=True)
class Continue:
    pass


@dataclass(frozen=True)
class Stop:
    reason: str
    evidence_count: int
    sample: str


Decision = Union[Continue, Stop]
CONTINUE = Continue()


def normalize(text: str) -> str:
    """Lowercase, keep alphanumerics and whitespace, collapse whitespace runs."""
    if not text:
        return ""
    kept = "".join(ch for ch in text.lower() if ch.isalnum() or ch.isspace())
    return _WHITESPACE_RUN.sub(" ", kept)


class RepetitionGuard:
    def __init__(self, prompt: str, config: GuardConfig | None = None) -> None:
        self.config = config or GuardConfig()
        self.normalized_prompt = normalize(prompt)
        self.generated = ""
        self.normalized_generated = ""
        self.prompt_echoes = 0
        self.duplicate_run = 0
        self.sentence_count = 0
        self._decision: Stop | None = None

    @property
    def stopped(self) -> bool:
        return self._decision is not None

    def register(self, text: str) -> Decision:
        """Append newly emitted text and re-evaluate the whole response."""
        if self._decision is not None:
            return self._decision

        self.generated += text
        decision = self._evaluate()
        if isinstance(decision, Stop):
            self._decision = decision
        return decision

    def _evaluate(self) -> Decision:
        cfg = self.config
        self.normalized_generated = normalize(self.generated)

        if self.normalized_prompt.strip():
            self.prompt_echoes = self.normalized_generated.count(self.normalized_prompt)
            if self.prompt_echoes >= cfg.prompt_echo_threshold:
                return Stop("promptRepeat", self.prompt_echoes, self._recent_sample())

        lines = [line.strip() for line in self.generated.splitlines()]
        lines = [line for line in lines if line]
        self.duplicate_run = 0
        if lines:
            last = lines[-1]
            for line in reversed(lines):
                if line != last:
                    break
                self.duplicate_run += 1
            if (
                len(last) >= cfg.min_duplicate_line_length
                and self.duplicate_run >= cfg.duplicate_line_threshold
            ):
                return Stop("lineRepeat", self.duplicate_run, self._bounded(last))

        self.sentence_count = sum(
            1 for segment in _SENTENCE_SPLIT.split(self.generated) if segment.strip()
        )
        if (
            self.sentence_count >= cfg.max_sentences
            and len(self.generated) > cfg.sentence_min_characters
        ):
            return Stop("sentenceLimit", self.sentence_count, self._recent_sample())

        if len(self.generated) >= cfg.max_characters:
            return Stop("lengthLimit", len(self.generated), self._recent_sample())

        return CONTINUE

    def _bounded(self, text: str) -> str:
        limit = self.config.sample_length
        return text if len(text) <= limit else text[-limit:]

    def _recent_sample(self) -> str:
        return self._bounded(self.generated.strip())

    def __repr__(self) -> str:
        return (
            f"RepetitionGuard(chars={len(self.generated)}, stopped={self.stopped}, "
            f"config={self.config!r})"
        )
