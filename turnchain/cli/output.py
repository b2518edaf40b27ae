"""Output formatting utilities for the CLI."""

from __future__ import annotations

import json
from datetime import datetime

from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from turnchain.chain.core import ChainResult
from turnchain.chain.events import ChainEvent
from turnchain.functions.base import FunctionSpec
from turnchain.llm.types import Message, MessageDelta, Role

ROLE_COLORS = {
    Role.SYSTEM: "dim",
    Role.USER: "blue",
    Role.ASSISTANT: "green",
    Role.TOOL: "cyan",
}

EVENT_COLORS = {
    "model_request": "yellow",
    "model_result": "green",
    "tool_call_started": "magenta",
    "tool_call_finished": "cyan",
    "run_complete": "bold green",
    "run_error": "red",
}


def describe_message(msg: Message) -> str:
    if msg.tool_call is not None:
        args = json.dumps(msg.tool_call.arguments)
        call = f"call {msg.tool_call.name}({args})"
        return f"{msg.content}\n{call}" if msg.content else call
    return msg.content or ""


class OutputFormatter:
    """Rich-based output formatting for the turnchain CLI."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def format_transcript(self, messages: list[Message]) -> None:
        table = Table(title="Transcript", show_lines=True)
        table.add_column("#", justify="right", no_wrap=True)
        table.add_column("Role", no_wrap=True)
        table.add_column("Status", no_wrap=True)
        table.add_column("Content")

        for i, msg in enumerate(messages):
            role = Text(msg.role.value, style=ROLE_COLORS.get(msg.role, "white"))
            if msg.role is Role.TOOL:
                role.append(f" {msg.name}", style="dim")
            content = Text(describe_message(msg), style="red" if msg.is_error else "")
            table.add_row(str(i), role, msg.status.value, content)

        self.console.print(table)

    def format_result(self, result: ChainResult) -> None:
        if result.ok:
            assert result.last_message is not None
            self.console.print(Panel(
                describe_message(result.last_message),
                title=f"Final ({result.last_message.status.value}, {result.rounds} rounds)",
                border_style="green",
            ))
        else:
            self.console.print(Panel(
                f"{type(result.error).__name__}: {result.error}",
                title=f"Run failed after {result.rounds} rounds",
                border_style="red",
            ))

    def format_event(self, event: ChainEvent) -> None:
        ts = event.timestamp.strftime("%H:%M:%S") if isinstance(event.timestamp, datetime) else str(event.timestamp)
        color = EVENT_COLORS.get(event.event_type, "white")
        payload = json.dumps(event.payload, default=str)[:160]
        self.console.print(
            f"  [{color}]{ts} r{event.round} {event.event_type:>18s}[/{color}]  {payload}",
            highlight=False,
        )

    def format_delta(self, delta: MessageDelta) -> None:
        if delta.content:
            self.console.print(delta.content, end="", highlight=False, markup=False)

    def format_function_list(self, functions: list[FunctionSpec]) -> None:
        table = Table(title="Functions")
        table.add_column("Name", style="cyan", no_wrap=True)
        table.add_column("Description")
        for f in functions:
            table.add_row(f.name, f.description)
        self.console.print(table)

    def format_config(self, config: dict) -> None:
        self.console.print(Syntax(json.dumps(config, indent=2, default=str), "json", theme="monokai"))
