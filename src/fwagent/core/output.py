"""Console output for fwagent, built on Rich.

Every message goes through the module-level ``console`` so verbosity,
dry-run state and color settings apply to the CLI, the backends and the
ufw status parser alike. Warnings and errors go to stderr.
"""

from enum import IntEnum
from typing import Any

from rich import box
from rich.console import Console as RichConsole
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table


class Verbosity(IntEnum):
    """Output verbosity levels."""
    QUIET = 0
    NORMAL = 1
    VERBOSE = 2
    DEBUG = 3


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "[green]Yes[/green]" if value else "[red]No[/red]"
    return str(value)


def _key_value_block(items: dict[str, Any]) -> str:
    return "\n".join(f"[bold]{key}:[/bold] {_format_value(value)}" for key, value in items.items())


class Console:
    """Leveled console output.

    ``info``, ``success`` and ``step`` are hidden by ``--quiet``;
    ``verbose`` and ``debug`` need ``-v`` and ``-vvv``.
    """

    def __init__(self) -> None:
        self.verbosity = Verbosity.NORMAL
        self.dry_run = False
        self.no_color = False
        self._build_consoles()

    def _build_consoles(self) -> None:
        self._console = RichConsole(highlight=False, no_color=self.no_color)
        self._err_console = RichConsole(stderr=True, highlight=False, no_color=self.no_color)

    def configure(
        self,
        verbosity: int = Verbosity.NORMAL,
        dry_run: bool = False,
        no_color: bool = False,
    ) -> None:
        """Apply the global CLI flags."""
        self.verbosity = Verbosity(max(Verbosity.QUIET, min(verbosity, Verbosity.DEBUG)))
        self.dry_run = dry_run
        if no_color != self.no_color:
            self.no_color = no_color
            self._build_consoles()

    def _emit(self, level: Verbosity, text: str) -> None:
        if self.verbosity >= level:
            self._console.print(text)

    def info(self, message: str) -> None:
        self._emit(Verbosity.NORMAL, f"[green][INFO][/green] {message}")

    def success(self, message: str) -> None:
        self._emit(Verbosity.NORMAL, f"[green][OK][/green] {message}")

    def step(self, message: str) -> None:
        """One firewall command or phase about to run."""
        self._emit(Verbosity.NORMAL, f"[blue]->[/blue] {message}")

    def verbose(self, message: str) -> None:
        self._emit(Verbosity.VERBOSE, f"[dim]{message}[/dim]")

    def debug(self, message: str) -> None:
        self._emit(Verbosity.DEBUG, f"[cyan][DEBUG][/cyan] {message}")

    def warn(self, message: str) -> None:
        self._err_console.print(f"[yellow][WARN][/yellow] {message}")

    def error(self, message: str) -> None:
        self._err_console.print(f"[red][ERROR][/red] {message}")

    def hint(self, message: str) -> None:
        self._console.print(f"[cyan]Hint:[/cyan] {message}")

    def dry_run_msg(self, message: str) -> None:
        """Show a skipped mutation; silent outside dry-run mode."""
        if self.dry_run:
            self._console.print(f"[blue][DRY-RUN][/blue] Would: {message}")

    def print(self, message: Any = "", **kwargs: Any) -> None:
        self._console.print(message, **kwargs)

    def table(
        self,
        title: str,
        columns: list[str],
        rows: list[list[str]],
        box_style: box.Box = box.ROUNDED,
    ) -> None:
        """Print rows under the given column headers."""
        table = Table(*columns, title=title, box=box_style)
        for row in rows:
            table.add_row(*row)
        self._console.print(table)

    def yaml(self, yaml_text: str, title: str = "Configuration") -> None:
        syntax = Syntax(yaml_text, "yaml", theme="monokai", line_numbers=False)
        self._console.print(Panel(syntax, title=title, border_style="cyan"))

    def summary(self, title: str, items: dict[str, Any]) -> None:
        """Key/value panel; booleans render as Yes/No."""
        self._console.print(Panel(_key_value_block(items), title=title, border_style="blue"))

    def operation_summary(self, operation: str, success: bool, details: dict[str, Any]) -> None:
        """Result panel for a batch or a conversion run."""
        status = "[green]SUCCESS[/green]" if success else "[red]FAILED[/red]"
        self._console.print(Panel(
            _key_value_block(details),
            title=f"{operation} - {status}",
            border_style="green" if success else "red",
        ))

    def confirm(self, message: str, default: bool = False, skip_confirm: bool = False) -> bool:
        """Ask a yes/no question.

        Args:
            message: Question to ask
            default: Answer used for an empty reply
            skip_confirm: Return True without prompting (``--yes``)

        Returns:
            True if confirmed; EOF and Ctrl-C count as no
        """
        if skip_confirm:
            return True

        suffix = "[Y/n]" if default else "[y/N]"
        try:
            response = self._console.input(f"{message} {suffix}: ").strip().lower()
        except (EOFError, KeyboardInterrupt):
            return False
        return default if not response else response in ("y", "yes")


console = Console()
