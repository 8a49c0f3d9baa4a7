"""
UI sinks: where the visible text of a session goes.

The coordinator pushes every emitted delta to ``on_text`` and, while streaming,
the accumulated text to ``on_refresh`` on a fixed period (the UI's
scroll/refresh tick). ``on_finish`` receives a ``SessionRecord`` exactly once
per session. A sink must tolerate updates ceasing at any point.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Protocol, TextIO, runtime_checkable

import click

from .outcomes import (
    CancelledBySupersession,
    CancelledByUser,
    Completed,
    Failed,
    StoppedByGuard,
    StreamOutcome,
)


@dataclass(frozen=True)
class SessionRecord:
    """What the UI needs after a session ends.

    ``display_text`` is the final visible text: the response, the kept partial
    text, an error placeholder, or ``""`` when the partial text was discarded.
    ``committed`` tells whether it was written to the conversation store.
    """

    prompt: str
    outcome: StreamOutcome
    display_text: str
    committed: bool


@runtime_checkable
class UISink(Protocol):
    def on_session_start(self, prompt: str) -> None: ...

    def on_text(self, delta: str) -> None: ...

    def on_refresh(self, text: str) -> None: ...

    def on_finish(self, record: SessionRecord) -> None: ...


class NullSink:
    def on_session_start(self, prompt: str) -> None:
        pass

    def on_text(self, delta: str) -> None:
        pass

    def on_refresh(self, text: str) -> None:
        pass

    def on_finish(self, record: SessionRecord) -> None:
        pass


class TerminalSink:
    """Writes streamed text to a terminal as it arrives."""

    def __init__(self, stream: TextIO | None = None, show_stats: bool = True) -> None:
        self.stream = stream or sys.stdout
        self.show_stats = show_stats

    def on_session_start(self, prompt: str) -> None:
        click.secho("assistant> ", fg="cyan", nl=False, file=self.stream)

    def on_text(self, delta: str) -> None:
        click.echo(delta, nl=False, file=self.stream)
        self.stream.flush()

    def on_refresh(self, text: str) -> None:
        pass

    def on_finish(self, record: SessionRecord) -> None:
        outcome = record.outcome
        click.echo(file=self.stream)
        if isinstance(outcome, Failed):
            click.secho(record.display_text, fg="red", file=self.stream)
        elif isinstance(outcome, CancelledByUser):
            click.secho("[stopped]", fg="yellow", file=self.stream)
        elif isinstance(outcome, CancelledBySupersession):
            click.secho("[superseded]", fg="yellow", file=self.stream)

        if self.show_stats and isinstance(outcome, (Completed, StoppedByGuard)):
            click.secho(f"({outcome.stats.summary()})", dim=True, file=self.stream)
