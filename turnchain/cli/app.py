"""
Main CLI application for turnchain.

Usage:
    turnchain chat [--profile NAME] [--stream/--no-stream] [--loop/--no-loop] [--verbose]
    turnchain replay SCRIPT [--verbose]
    turnchain config show|validate
    turnchain version
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from turnchain import __version__
from turnchain.chain.core import Chain, ChainConfig
from turnchain.cli.output import OutputFormatter
from turnchain.config import TurnchainConfig, load_config
from turnchain.errors import TurnchainError
from turnchain.llm.types import Message

app = typer.Typer(name="turnchain", help="Run LLM conversations with tool calls")
config_app = typer.Typer(help="Configuration management")
app.add_typer(config_app, name="config")

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get_config_path() -> Path | None:
    """Find config file in standard locations."""
    candidates = [
        Path.cwd() / "turnchain.yaml",
        Path.cwd() / "turnchain.yml",
        Path.home() / ".config" / "turnchain" / "config.yaml",
    ]
    for p in candidates:
        if p.is_file():
            return p
    return None


def _load(profile: str | None = None, overrides: dict[str, Any] | None = None) -> TurnchainConfig:
    try:
        return load_config(_get_config_path(), profile=profile, cli_overrides=overrides)
    except TurnchainError as e:
        console.print(f"[red]Config error:[/red] {e}")
        raise typer.Exit(1)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _build_model(cfg: TurnchainConfig):
    from turnchain.llm.models.openai_compat import OpenAICompatModel

    return OpenAICompatModel(
        url=cfg.model.api_base,
        model=cfg.model.model,
        api_key=os.environ.get(cfg.model.api_key_env, ""),
        timeout=cfg.model.timeout_seconds,
        max_retries=cfg.model.max_retries,
        temperature=cfg.model.temperature,
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def chat(
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
    stream: Optional[bool] = typer.Option(None, "--stream/--no-stream", help="Stream tokens as they arrive"),
    loop: Optional[bool] = typer.Option(None, "--loop/--no-loop", help="Keep calling the model until it stops requesting tools"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Print trace events"),
):
    """Start an interactive chat against the configured endpoint."""
    overrides: dict[str, Any] = {}
    if stream is not None:
        overrides["run.stream"] = stream
    if loop is not None:
        overrides["run.mode"] = "while_needs_response" if loop else "single"
    if verbose:
        overrides["run.verbose"] = True
    cfg = _load(profile, overrides)
    setup_logging(cfg.logging.level)

    formatter = OutputFormatter(console)
    chain = Chain(ChainConfig.from_run_config(
        cfg.run,
        model=_build_model(cfg),
        on_delta=formatter.format_delta if cfg.run.stream else None,
        on_event=formatter.format_event,
    ))
    chain.add_message(Message.system(cfg.run.system_prompt))

    async def _run():
        while True:
            try:
                text = console.input("[bold blue]you>[/bold blue] ").strip()
            except (EOFError, KeyboardInterrupt):
                break
            if text in ("exit", "quit", "/exit", "/quit"):
                break
            if not text:
                continue
            result = await chain.add_message(Message.user(text)).run()
            if cfg.run.stream:
                console.print()
            if not result.ok or not cfg.run.stream:
                formatter.format_result(result)

    asyncio.run(_run())


@app.command()
def replay(
    script: Path = typer.Argument(..., exists=True, dir_okay=False, help="YAML replay script"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Print trace events"),
):
    """Run a chain against canned model responses from a YAML script."""
    from turnchain.cli.script import load_script

    cfg = _load()
    setup_logging(cfg.logging.level)
    formatter = OutputFormatter(console)

    try:
        spec = load_script(script)
        if verbose and spec.functions:
            formatter.format_function_list(spec.functions)
        chain = Chain(ChainConfig(
            functions=spec.functions,
            context=spec.context,
            stream=spec.stream,
            verbose=verbose,
            mode=spec.mode,
            on_event=formatter.format_event,
            override=spec.responses,
        ))
        chain.add_messages(spec.messages)
        result = asyncio.run(chain.run())
    except TurnchainError as e:
        console.print(f"[red]Invalid script:[/red] {e}")
        raise typer.Exit(1)

    formatter.format_transcript(result.messages)
    formatter.format_result(result)
    if not result.ok:
        raise typer.Exit(2)


@config_app.command("show")
def config_show():
    """Show effective config."""
    OutputFormatter(console).format_config(_load().to_dict())


@config_app.command("validate")
def config_validate():
    """Validate config and summarise it."""
    config_path = _get_config_path()
    cfg = _load()
    console.print("[green]Config is valid.[/green]")
    if config_path:
        console.print(f"  Loaded from: {config_path}")
    else:
        console.print("  [dim]No config file found, using defaults.[/dim]")
    console.print(f"  Model: {cfg.model.name} ({cfg.model.model})")
    console.print(f"  Run mode: {cfg.run.mode}, stream={cfg.run.stream}")


@app.command()
def version():
    """Show version."""
    console.print(f"turnchain v{__version__}")


def main():
    app()


if __name__ == "__main__":
    main()
