"""Command-line entry point for Pocket Agent."""

import asyncio
import signal
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.prompt import Prompt
from rich.table import Table

from pocket_agent.agent import Agent, ChatOutcome
from pocket_agent.config import Config, set_config
from pocket_agent.exceptions import AgentBusyError, ConfigurationError
from pocket_agent.llm import create_session_factory
from pocket_agent.logging import configure_logging, log
from pocket_agent.tools import create_default_registry

app = typer.Typer(help="Pocket Agent - a local tool-using chat agent")
console = Console()

_EXIT_COMMANDS = {"/exit", "/quit"}


async def _run_cancellable(agent: Agent, text: str) -> str:
    """Run one chat call; Ctrl-C cancels the reply instead of exiting."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, agent.cancel)
    except (NotImplementedError, RuntimeError):
        return await agent.chat(text)
    try:
        return await agent.chat(text)
    finally:
        loop.remove_signal_handler(signal.SIGINT)


def _render_stats(agent: Agent) -> Table:
    table = Table(title="Agent stats", show_header=False)
    for key, value in agent.get_stats().items():
        table.add_row(key, str(value))
    return table


async def run_interactive(agent: Agent) -> None:
    """Read-eval loop until the user exits."""
    console.print("[bold]Pocket Agent[/bold] - type /reset, /stats or /exit")
    try:
        while True:
            try:
                text = await asyncio.to_thread(Prompt.ask, "[bold cyan]you[/bold cyan]")
            except EOFError:
                break
            text = text.strip()
            if not text:
                continue
            if text in _EXIT_COMMANDS:
                break
            if text == "/reset":
                agent.reset()
                console.print("[dim]Conversation reset.[/dim]")
                continue
            if text == "/stats":
                console.print(_render_stats(agent))
                continue

            try:
                with console.status("Thinking..."):
                    reply = await _run_cancellable(agent, text)
            except AgentBusyError as e:
                console.print(f"[yellow]{e}[/yellow]")
                continue
            except Exception as e:
                log.error("Chat failed", error=str(e))
                console.print(f"[red]Sorry, I encountered an error: {e}[/red]")
                continue

            if agent.last_outcome == ChatOutcome.CANCELLED:
                console.print(f"[dim]{reply}[/dim]")
            else:
                console.print(Markdown(reply))
    finally:
        agent.close()


@app.command()
def chat(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    base_url: str = typer.Option("", "--base-url", help="Override engine base URL"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Start an interactive chat session."""
    try:
        cfg = Config.from_yaml(Path(config)) if config else Config.load()
    except ConfigurationError as e:
        console.print(f"[red]Failed to load config: {escape(str(e))}[/red]")
        raise typer.Exit(code=1)

    if model:
        cfg.model.model = model
    if base_url:
        cfg.model.base_url = base_url
    if verbose:
        cfg.logging.level = "DEBUG"

    set_config(cfg)
    configure_logging()

    try:
        factory = create_session_factory(cfg.model)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)

    agent = Agent(session_factory=factory, tools=create_default_registry(), settings=cfg.agent)
    try:
        asyncio.run(run_interactive(agent))
    except KeyboardInterrupt:
        log.info("Shutting down...")
        sys.exit(0)


@app.command()
def version() -> None:
    """Show version information."""
    from pocket_agent import __version__
    console.print(f"Pocket Agent v{__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
