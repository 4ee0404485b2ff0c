"""
Sandbox Agent CLI.

Run `sandbox-agent run WORK_DIR "task"` to start a run. Every iteration is
checkpointed under .sandbox_agent/state/, so an interrupted or capped run can
be picked up again with `sandbox-agent resume`.
"""

import logging
import sys
import threading
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from tenacity import wait_exponential

from sandbox_agent import __version__
from sandbox_agent.core.agent import Agent, AgentState, ModelCallError, RunCancelled
from sandbox_agent.core.dispatcher import ToolDispatcher
from sandbox_agent.providers.base import make_chat_fn
from sandbox_agent.state.engine import Checkpointer, StateEngine
from sandbox_agent.validation.config import Config, ConfigError

console = Console(stderr=True)
logger = logging.getLogger("sandbox_agent")


def _setup_logging(verbose: bool, log_file: Optional[Path]) -> None:
    """Console logging through rich, plus an optional plain log file."""
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()

    console_handler = RichHandler(console=console, show_path=False)
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        logger.addHandler(file_handler)


def _load_config() -> Config:
    try:
        config = Config.load()
        config.merged  # validate early
        return config
    except ConfigError as e:
        console.print(f"[red]Config error: {e}[/red]")
        sys.exit(1)


def _engine(config: Config, state_dir: Optional[Path]) -> StateEngine:
    return StateEngine(state_dir or Path(config.merged.state_dir))


def _echo_token(token: str) -> None:
    click.echo(token, nl=False)


def _drive(
    state: AgentState,
    config: Config,
    engine: StateEngine,
    start_iteration: int,
    max_iterations: Optional[int],
) -> None:
    """Run the loop with checkpointing and translate fatal errors into exit codes."""
    settings = config.agent
    dispatch = config.dispatch
    cancel_event = threading.Event()

    limit = max_iterations or settings.max_iterations
    checkpointer = Checkpointer(
        engine,
        start_iteration=start_iteration,
        max_iterations=start_iteration + limit if limit else None,
        cancel_event=cancel_event,
    )
    agent = Agent(
        state,
        dispatcher=ToolDispatcher(
            state.work_dir,
            command_timeout=dispatch.command_timeout,
            default_line_count=dispatch.default_line_count,
            max_line_chars=dispatch.max_line_chars,
            max_output_lines=dispatch.max_output_lines,
        ),
        max_attempts=settings.max_attempts,
        retry_wait=wait_exponential(
            multiplier=1, min=settings.retry_min_wait, max=settings.retry_max_wait
        ),
    )

    try:
        result = agent.run(
            make_chat_fn(config),
            trace_fn=checkpointer,
            on_token=_echo_token,
            cancel_event=cancel_event,
        )
    except RunCancelled:
        click.echo()
        console.print(
            f"[yellow]Stopped after iteration {checkpointer.iteration}.[/yellow] "
            "[dim]Continue with: sandbox-agent resume[/dim]"
        )
        sys.exit(130)
    except ModelCallError as e:
        click.echo()
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo()
        console.print(
            f"[yellow]Interrupted. Last checkpoint: iteration {checkpointer.iteration}.[/yellow]"
        )
        sys.exit(130)

    click.echo()
    console.print(
        f"[green]Done[/green] in {result.iterations} iteration(s), "
        f"{len(state.current_tasks)} task(s) tracked."
    )
    if checkpointer.last_path:
        console.print(f"[dim]Checkpoint: {checkpointer.last_path}[/dim]")


@click.group()
@click.version_option(__version__, "--version", "-V")
@click.option("--verbose", "-v", is_flag=True, help="Log every query, reply and directive")
@click.option("--log-file", type=click.Path(dir_okay=False, path_type=Path), help="Write a full log")
def cli(verbose: bool, log_file: Optional[Path]) -> None:
    """
    Sandbox Agent - autonomous tool-use loop over a work directory.

    \b
    Examples:
        sandbox-agent run ./project "summarize the auth flow into notes.json"
        sandbox-agent resume --max-iterations 5
        sandbox-agent status
    """
    _setup_logging(verbose, log_file)


@cli.command()
@click.argument(
    "work_dir",
    type=click.Path(exists=True, file_okay=False, resolve_path=True, path_type=Path),
)
@click.argument("task", nargs=-1, required=True)
@click.option("--model", "-m", help="Model to query (defaults to config)")
@click.option("--max-iterations", "-n", type=int, help="Stop after this many iterations")
@click.option("--state-dir", type=click.Path(file_okay=False, path_type=Path), help="Checkpoint directory")
@click.option("--reminder", help="One-shot note appended to the first query")
def run(
    work_dir: Path,
    task: tuple,
    model: Optional[str],
    max_iterations: Optional[int],
    state_dir: Optional[Path],
    reminder: Optional[str],
) -> None:
    """Start a new run on WORK_DIR."""
    config = _load_config()
    state = AgentState.new(str(work_dir), " ".join(task), model or config.agent.model)
    if reminder:
        state.reminder = reminder
    _drive(state, config, _engine(config, state_dir), 0, max_iterations)


@cli.command()
@click.option("--iteration", "-i", type=int, help="Resume from this checkpoint (default: latest)")
@click.option("--max-iterations", "-n", type=int, help="Stop after this many more iterations")
@click.option("--state-dir", type=click.Path(file_okay=False, path_type=Path), help="Checkpoint directory")
@click.option("--model", "-m", help="Switch model for the rest of the run")
@click.option("--reminder", help="One-shot note appended to the next query")
def resume(
    iteration: Optional[int],
    max_iterations: Optional[int],
    state_dir: Optional[Path],
    model: Optional[str],
    reminder: Optional[str],
) -> None:
    """Continue a run from its checkpoint."""
    config = _load_config()
    engine = _engine(config, state_dir)

    if iteration is not None:
        state = engine.load_iteration(iteration)
        loaded = (iteration, state) if state else None
    else:
        loaded = engine.load_latest()

    if loaded is None:
        console.print("[red]No checkpoint found.[/red]")
        sys.exit(1)

    start, state = loaded
    if model:
        state.model = model
    if reminder:
        state.reminder = reminder

    console.print(f"[dim]Resuming from iteration {start} ({state.work_dir})[/dim]")
    _drive(state, config, engine, start, max_iterations)


@cli.command()
@click.option("--state-dir", type=click.Path(file_okay=False, path_type=Path), help="Checkpoint directory")
def status(state_dir: Optional[Path]) -> None:
    """Show the latest checkpoint."""
    config = _load_config()
    loaded = _engine(config, state_dir).load_latest()
    if loaded is None:
        console.print("[dim]No checkpoint yet[/dim]")
        return

    iteration, state = loaded
    console.print(Panel(
        f"[cyan]Task:[/cyan] {state.task_description}\n"
        f"[cyan]Work dir:[/cyan] {state.work_dir}\n"
        f"[cyan]Model:[/cyan] {state.model}\n"
        f"[cyan]Iteration:[/cyan] {iteration}\n"
        f"[cyan]Directives:[/cyan] {len(state.history)} unique",
        title="Sandbox Agent",
        border_style="blue",
    ))

    if state.current_tasks:
        table = Table(show_header=True, header_style="bold")
        table.add_column("ID", style="dim", width=4)
        table.add_column("Status", width=12)
        table.add_column("Task", style="white")
        for task in state.current_tasks:
            table.add_row(str(task.id), task.status, task.content[:60])
        console.print(table)


@cli.command()
@click.option("--state-dir", type=click.Path(file_okay=False, path_type=Path), help="Checkpoint directory")
@click.option("--keep", type=int, help="Delete all but the newest KEEP checkpoints")
def checkpoints(state_dir: Optional[Path], keep: Optional[int]) -> None:
    """List (or prune) saved checkpoints."""
    config = _load_config()
    engine = _engine(config, state_dir)

    if keep is not None:
        deleted = engine.cleanup(keep=keep)
        console.print(f"[green]Deleted {deleted} checkpoint(s)[/green]")

    iterations = engine.list_checkpoints()
    if not iterations:
        console.print("[dim]No checkpoints[/dim]")
        return
    for it in iterations:
        click.echo(f"{it:4d}  {engine.checkpoint_dir / f'{it:04d}.yaml'}")


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
