#!/usr/bin/env python3

from __future__ import annotations
import asyncio
from contextlib import suppress
from pathlib import Path
from typing import List, Optional

import aioconsole
import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from client.errors import FatalClientError
from client.ws_client import ConnectionManager
from shared.config import ClientConfig, ConfigError, default_config_path, load_config
from shared.log import configure_root_logging, get_logger

app = typer.Typer(help="Showdown chat protocol client")
console = Console()
logger = get_logger(__name__)


class ConsoleSink:
    """Prints forwarded protocol lines and pages to the terminal."""

    def __init__(self, console: Console, show_raw: bool = False) -> None:
        self.console = console
        self.show_raw = show_raw

    def on_message(self, roomid: str, message_type: str, fields: List[str]) -> None:
        room = escape(roomid)
        if message_type in ("c", "chat") and len(fields) >= 2:
            self.console.print(f"[bold cyan]{room}[/] {escape(fields[0])}: {escape('|'.join(fields[1:]))}")
        elif message_type in ("c:",) and len(fields) >= 3:
            self.console.print(f"[bold cyan]{room}[/] {escape(fields[1])}: {escape('|'.join(fields[2:]))}")
        elif message_type == "pm" and len(fields) >= 3:
            self.console.print(f"[bold magenta]PM[/] {escape(fields[0])}: {escape('|'.join(fields[2:]))}")
        elif message_type in ("error", "popup"):
            self.console.print(f"[red]{room} {message_type}[/]: {escape('|'.join(fields))}")
        elif self.show_raw:
            self.console.print(f"[dim]{room} {escape(message_type or '-')} {escape(repr(fields))}[/]")

    def on_page(self, roomid: str, body: str) -> None:
        self.console.print(f"[bold yellow]page[/] {escape(roomid)} ({len(body)} chars)")
        if self.show_raw:
            self.console.print(escape(body))


def _load(config: Optional[Path], **overrides) -> ClientConfig:
    try:
        return load_config(config, **overrides)
    except ConfigError as e:
        console.print(f"[red]Invalid configuration[/]: {e}")
        raise typer.Exit(code=2)


@app.command("show-config")
def show_config(
    config: Path = typer.Option(default_config_path(), help="Path to config.yaml"),
):
    """Print the effective configuration (password masked)."""
    cfg = _load(config)
    table = Table(title="Client configuration")
    table.add_column("Key")
    table.add_column("Value")
    for key, value in cfg.redacted().items():
        table.add_row(key, escape(repr(value)))
    console.print(table)
    console.print(f"url: {cfg.url}", soft_wrap=True)


@app.command()
def run(
    config: Path = typer.Option(default_config_path(), help="Path to config.yaml"),
    server: Optional[str] = typer.Option(None, help="Chat server host"),
    port: Optional[int] = typer.Option(None, help="Chat server port"),
    nick: Optional[str] = typer.Option(None, help="Name to log in as"),
    log_level: Optional[str] = typer.Option(None, help="DEBUG, INFO, WARNING, ERROR"),
    raw: bool = typer.Option(False, help="Print every forwarded protocol line"),
):
    """Connect, log in and relay operator input until /quit."""
    cfg = _load(config, server=server, port=port, nick=nick, log_level=log_level)
    configure_root_logging(cfg.log_level)
    console.print(f"[bold green]Client starting[/] as {escape(cfg.nick)} on {cfg.url}")

    sink = ConsoleSink(console, show_raw=raw)
    manager = ConnectionManager(cfg, sink, sink)

    async def input_loop() -> None:
        while True:
            line = (await aioconsole.ainput(": ")).strip()
            if not line:
                continue
            if line in {"/quit", "/exit"}:
                return
            if line == "/help":
                console.print("/quit, room|message, |/command, or plain text for the primary room")
                continue
            if "|" in line:
                manager.send(line)
            else:
                manager.send_room(line)

    async def main_loop() -> None:
        client_task = asyncio.create_task(manager.run_forever())
        input_task = asyncio.create_task(input_loop())
        try:
            done, _ = await asyncio.wait({client_task, input_task}, return_when=asyncio.FIRST_COMPLETED)
            if client_task in done:
                client_task.result()
        finally:
            input_task.cancel()
            with suppress(asyncio.CancelledError, EOFError):
                await input_task
            await manager.disconnect()
            client_task.cancel()
            with suppress(asyncio.CancelledError):
                await client_task

    try:
        asyncio.run(main_loop())
    except FatalClientError as e:
        console.print(f"[bold red]{escape(str(e))}[/]")
        raise typer.Exit(code=e.exit_code)
    except KeyboardInterrupt:
        console.print("Interrupted")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
