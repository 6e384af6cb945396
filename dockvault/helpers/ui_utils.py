"""
CLI utilities for dockvault.

Rich-based helpers for console output plus ``run_command``, the single
entry point for every external tool (tar, rsync, ssh, mc, tailscale).
"""

import os
import subprocess
import sys
from typing import List, Optional, Sequence, Union

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from .logging import get_logger

console = Console()
logger = get_logger(__name__)


# --------------- Subprocess ---------------


REDACTED = "***"


def mask_secrets(text: str, secrets: Sequence[str] = ()) -> str:
    """Replace every non-empty secret in ``text``."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED)
    return text


class SubprocessError(Exception):
    """
    An external command exited non-zero (or could not be started).

    Values listed in ``redact`` never reach ``cmd``, ``stderr`` or the message.
    """

    def __init__(self, cmd: Union[Sequence[str], str], returncode, stderr: str = "",
                 redact: Sequence[str] = ()):
        if isinstance(cmd, str):
            cmd = mask_secrets(cmd, redact)
        else:
            cmd = [mask_secrets(str(c), redact) for c in cmd]
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = mask_secrets(stderr or "", redact)
        cmd_str = cmd if isinstance(cmd, str) else " ".join(cmd)
        message = f"Command failed ({returncode}): {cmd_str}"
        if self.stderr.strip():
            message += f"\n{self.stderr.strip()}"
        super().__init__(message)


def run_command(
    cmd: List[str],
    description: str = "",
    timeout: Optional[float] = None,
    check: bool = True,
    input: Optional[str] = None,
    cwd: Optional[str] = None,
    redact: Sequence[str] = (),
) -> subprocess.CompletedProcess:
    """
    Run an external command with captured text output.

    The child PID is tracked by the SafeExitManager while it runs so that
    SIGINT/SIGTERM terminates it before cleanup handlers fire.

    Args:
        cmd: Command and arguments
        description: Human readable label for logs
        timeout: Seconds before the child is killed (None = unbounded)
        check: Raise SubprocessError on non-zero exit
        input: Text passed to stdin
        cwd: Working directory
        redact: Secrets in ``cmd`` that must not show up in logs or errors

    Returns:
        CompletedProcess with stdout/stderr as text

    Raises:
        SubprocessError: Non-zero exit, timeout or missing binary (check=True)
    """
    from ..cores.safe_exit_manager import SafeExitManager

    label = description or cmd[0]
    logger.debug(f"Running: {mask_secrets(' '.join(str(c) for c in cmd), redact)}",
                 extra={"operation": label})

    try:
        proc = subprocess.Popen(
            [str(c) for c in cmd],
            stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            cwd=cwd,
        )
    except FileNotFoundError as e:
        if not check:
            return subprocess.CompletedProcess(cmd, 127, "", mask_secrets(str(e), redact))
        raise SubprocessError(cmd, 127, str(e), redact=redact) from e

    safe_exit = SafeExitManager.get_instance()
    cleanup_id = safe_exit.register_process(proc.pid, label)
    try:
        stdout, stderr = proc.communicate(input=input, timeout=timeout)
    except subprocess.TimeoutExpired:
        proc.kill()
        stdout, stderr = proc.communicate()
        raise SubprocessError(cmd, "timeout", f"{label} timed out after {timeout}s", redact=redact)
    finally:
        safe_exit.unregister_process(cleanup_id)

    result = subprocess.CompletedProcess(proc.args, proc.returncode, stdout, stderr)
    if check and proc.returncode != 0:
        raise SubprocessError(cmd, proc.returncode, stderr, redact=redact)
    return result


def require_root(command_name: str = "this command") -> None:
    """
    Exit unless running as root.

    Raises:
        typer.Exit: If not running as root
    """
    if os.geteuid() != 0:
        print_error(f"Root privileges required for {command_name}")
        console.print("[yellow]dockvault stops containers and rewrites ownership under /root.[/yellow]")
        console.print(f"  [cyan]sudo {' '.join(sys.argv)}[/cyan]\n")
        raise typer.Exit(1)


# --------------- Output ---------------


def print_header(title: str, subtitle: str = ""):
    """Print styled header with optional subtitle"""
    content = f"[bold cyan]{title}[/bold cyan]"
    if subtitle:
        content += f"\n[dim]{subtitle}[/dim]"
    console.print(Panel(content, border_style="cyan"))


def print_success(message: str):
    console.print(f"[green]✓[/green] {escape(message)}")


def print_error(message: str):
    console.print(f"[red]✗[/red] {escape(message)}")


def print_warning(message: str):
    console.print(f"[yellow]⚠[/yellow] {escape(message)}")


def print_info(message: str):
    console.print(f"[cyan]→[/cyan] {escape(message)}")


def print_separator():
    console.print("[dim]" + "─" * 60 + "[/dim]")


def print_panel(message: str, title: str = "", style: str = "cyan"):
    """Print a fitted panel with colored border."""
    console.print(
        Panel.fit(message, title=f"[bold {style}]{title}[/bold {style}]" if title else None,
                  border_style=style)
    )


def print_next_steps(steps: List[str]) -> None:
    """Print a numbered list of follow-up actions."""
    console.print("\n[bold]Next steps:[/bold]")
    for i, step in enumerate(steps, 1):
        console.print(f"  {i}. {step}")
    console.print()


def create_table(title: str, columns: List[tuple]) -> Table:
    """
    Create a rich table.

    Args:
        title: Table title
        columns: List of (name, style) tuples
    """
    table = Table(title=title, show_header=True, header_style="bold cyan")
    for name, style in columns:
        table.add_column(name, style=style)
    return table


# --------------- Prompts ---------------


def prompt_choice(message: str, choices: List[str], default: Optional[str] = None) -> str:
    """Ask for one of ``choices``."""
    return Prompt.ask(message, choices=choices, default=default)


def prompt_confirm(message: str, default: bool = False) -> bool:
    return Confirm.ask(message, default=default)


def confirm_action(message: str, keyword: str = "yes") -> bool:
    """
    Confirmation for destructive actions: the user must type ``keyword``.

    Returns:
        True only for an exact match
    """
    console.print(f"\n[bold yellow]{message}[/bold yellow]")
    answer = Prompt.ask(f"Type '{keyword}' to continue", default="")
    return answer.strip() == keyword
