"""
SiliconStream CLI — inspect budgets, replay transcripts, and chat with a local engine.

Registered as `silicon-stream` console script via pyproject.toml.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import json
import logging
import signal
from pathlib import Path

import click

from .adapters import AppleFMEngine, InferenceEngine, LlamaCppEngine, ReplayEngine
from .budget import ContextBudgeter
from .catalog import ModelCatalog
from .conversation import InMemoryConversationStore
from .coordinator import StreamingSessionCoordinator
from .exceptions import ConfigurationError, SiliconStreamError
from .guard import GuardConfig
from .outcomes import Failed
from .settings import StreamSettings
from .sinks import TerminalSink

APPLE_FM_MODEL_ID = "apple-fm-system"


def _resolve_log_level(level: str | int, fallback: int = logging.WARNING) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        if level.isdigit():
            return int(level)
        resolved = logging.getLevelName(level.upper())
        if isinstance(resolved, int):
            return resolved
    click.secho(
        f"Unsupported log level '{level}'; falling back to {logging.getLevelName(fallback)}.",
        fg="yellow",
        err=True,
    )
    return fallback


def _settings(ctx: click.Context, model_id: str | None = None) -> StreamSettings:
    return ctx.obj["settings"].with_overrides(model_id=model_id)


def _replace_guard(guard: GuardConfig, **changes) -> GuardConfig:
    try:
        return dataclasses.replace(guard, **{k: v for k, v in changes.items() if v is not None})
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc


def _build_coordinator(
    engine: InferenceEngine,
    settings: StreamSettings,
    model_id: str,
    catalog: ModelCatalog,
    show_stats: bool = True,
) -> StreamingSessionCoordinator:
    entry = catalog.entry(model_id)
    store = InMemoryConversationStore(
        model_id, system_prompt=entry.system_prompt if entry is not None else None
    )
    return StreamingSessionCoordinator(
        engine,
        store,
        model_id=model_id,
        catalog=catalog,
        sink=TerminalSink(show_stats=show_stats),
        settings=settings,
    )


def _load_fragments(path: Path) -> list[str]:
    """Read a JSON-lines transcript: each line is a string or an object with ``content``."""
    fragments: list[str] = []
    for number, raw in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        if not raw.strip():
            continue
        try:
            item = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(
                f"[SiliconStream] {path}:{number}: invalid JSON ({exc.msg})."
            ) from exc
        if isinstance(item, str):
            fragments.append(item)
        elif isinstance(item, dict) and isinstance(item.get("content"), str):
            fragments.append(item["content"])
        else:
            raise ConfigurationError(
                f"[SiliconStream] {path}:{number}: expected a string or an object with 'content'."
            )
    return fragments


# ── Main group ────────────────────────────────────────────────────────────────


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(package_name="silicon-stream")
@click.option(
    "--log-level",
    default="WARNING",
    show_default=True,
    help="Logging level for the silicon_stream logger (name or number).",
)
@click.option(
    "--refresh-interval",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Seconds between UI refresh ticks while streaming.",
)
@click.option(
    "--max-characters",
    type=click.IntRange(min=1),
    default=None,
    help="Guard: hard character ceiling per response.",
)
@click.option(
    "--max-sentences",
    type=click.IntRange(min=1),
    default=None,
    help="Guard: sentence ceiling once a response passes 80 characters.",
)
@click.option(
    "--stop-marker",
    "stop_markers",
    multiple=True,
    help="Stop marker; repeat to pass several. Replaces the catalog markers.",
)
@click.pass_context
def cli(
    ctx: click.Context,
    log_level: str,
    refresh_interval: float | None,
    max_characters: int | None,
    max_sentences: int | None,
    stop_markers: tuple[str, ...],
) -> None:
    """SiliconStream — streaming session tools for local language models.

    Settings come from SILICON_STREAM_* environment variables; the options
    below override them.
    """
    logging.basicConfig(
        level=_resolve_log_level(log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    settings = ctx.obj.get("settings") or StreamSettings.from_env()
    guard = _replace_guard(
        settings.guard, max_characters=max_characters, max_sentences=max_sentences
    )
    ctx.obj["settings"] = settings.with_overrides(
        refresh_interval=refresh_interval,
        guard=guard,
        stop_markers=tuple(stop_markers) or None,
    )
    ctx.obj.setdefault("catalog", ModelCatalog())


# ── Catalog & budgets ─────────────────────────────────────────────────────────


@cli.command()
@click.pass_context
def models(ctx: click.Context) -> None:
    """List known models with their context windows and response budgets."""
    catalog: ModelCatalog = ctx.obj["catalog"]
    budgeter = ContextBudgeter(catalog)

    click.secho("\nKnown models:\n", fg="cyan", bold=True)
    click.secho(f"  {'Model':<18}{'Runtime':<12}{'Context':>9}{'Response':>10}", fg="cyan")
    click.secho(f"  {'─' * 17} {'─' * 11} {'─' * 8} {'─' * 9}", fg="cyan")
    for entry in catalog.all():
        click.echo(
            f"  {entry.model_id:<18}{entry.runtime.value:<12}"
            f"{entry.context_window:>9}{budgeter.response_token_budget(entry.model_id):>10}"
        )
    click.echo()


@cli.command()
@click.argument("model_id")
@click.pass_context
def budget(ctx: click.Context, model_id: str) -> None:
    """Show the token budget for MODEL_ID (unknown ids use the defaults)."""
    catalog: ModelCatalog = ctx.obj["catalog"]
    plan = ContextBudgeter(catalog).budget_for(model_id)
    if model_id not in catalog:
        click.secho(f"Unknown model '{model_id}'; using default limits.", fg="yellow", err=True)
    click.echo(f"model:           {model_id}")
    click.echo(f"context limit:   {plan.context_limit}")
    click.echo(f"prompt ceiling:  {plan.prompt_token_ceiling}")
    click.echo(f"response budget: {plan.response_token_ceiling}")


# ── Replay ────────────────────────────────────────────────────────────────────


@cli.command()
@click.argument("transcript", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--prompt", "prompt", default="Replay", show_default=True, help="Prompt text.")
@click.option("--model", "model_id", default=None, help="Model id (defaults to settings).")
@click.option("--delay", type=float, default=0.0, show_default=True, help="Seconds per fragment.")
@click.option("--no-stats", is_flag=True, help="Do not print token statistics.")
@click.pass_context
def replay(
    ctx: click.Context,
    transcript: Path,
    prompt: str,
    model_id: str | None,
    delay: float,
    no_stats: bool,
) -> None:
    """Stream a recorded fragment TRANSCRIPT through a full session.

    \b
    The transcript is JSON lines, one fragment per line:
        "Hello"
        {"content": " world"}
    """
    if delay < 0:
        raise click.BadParameter("--delay must be >= 0")
    settings = _settings(ctx, model_id)
    engine = ReplayEngine(_load_fragments(transcript), delay=delay)
    coordinator = _build_coordinator(
        engine,
        settings,
        settings.model_id,
        ctx.obj["catalog"],
        show_stats=not no_stats,
    )

    async def _replay():
        task = await coordinator.submit(prompt)
        if task is None:
            raise click.BadParameter("--prompt must not be empty")
        return await task

    outcome = asyncio.run(_replay())
    click.secho(f"outcome: {outcome.kind.value}", dim=True, err=True)
    if isinstance(outcome, Failed):
        raise SystemExit(1)


# ── Interactive chat ──────────────────────────────────────────────────────────


async def _chat_loop(coordinator: StreamingSessionCoordinator) -> None:
    loop = asyncio.get_running_loop()
    click.secho(
        "Type a message and press Enter. Ctrl-C stops a response; /clear resets; /quit exits.",
        dim=True,
    )
    while True:
        try:
            line = await asyncio.to_thread(click.prompt, "you", prompt_suffix="> ")
        except (click.Abort, EOFError):
            click.echo()
            return
        command = line.strip()
        if command in ("/quit", "/exit"):
            return
        if command == "/clear":
            await coordinator.clear()
            click.secho("Conversation cleared.", fg="yellow")
            continue

        task = await coordinator.submit(line)
        if task is None:
            continue
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGINT, coordinator.stop)
        try:
            await task
        finally:
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(signal.SIGINT)


@cli.command()
@click.option(
    "--engine",
    "engine_name",
    type=click.Choice(["apple", "llama"]),
    default="apple",
    show_default=True,
    help="Inference engine to stream from.",
)
@click.option("--llama-url", default="http://localhost:8000", show_default=True)
@click.option("--model", "model_id", default=None, help="Model id used for budgeting.")
@click.pass_context
def chat(ctx: click.Context, engine_name: str, llama_url: str, model_id: str | None) -> None:
    """Chat with a local model in the terminal."""
    if engine_name == "apple":
        engine: InferenceEngine = AppleFMEngine()
        settings = _settings(ctx, model_id or APPLE_FM_MODEL_ID)
    else:
        engine = LlamaCppEngine(llama_url)
        settings = _settings(ctx, model_id)

    coordinator = _build_coordinator(engine, settings, settings.model_id, ctx.obj["catalog"])

    async def _session() -> None:
        await engine.preload()
        try:
            await _chat_loop(coordinator)
        finally:
            await coordinator.clear()
            aclose = getattr(engine, "aclose", None)
            if aclose is not None:
                await aclose()

    asyncio.run(_session())


# ── Entry point ───────────────────────────────────────────────────────────────


def cli_entry() -> None:
    """Entry point for the console_scripts."""
    try:
        cli()
    except SiliconStreamError as exc:
        click.secho(str(exc), fg="red", err=True)
        raise SystemExit(2) from exc


if __name__ == "__main__":
    cli_entry()
