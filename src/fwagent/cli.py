"""Main CLI entry point using Typer.

This module defines the root CLI application and global options.
Command groups are registered from submodules.
"""

from pathlib import Path
from typing import Optional, Annotated

import typer
from rich.console import Console

from fwagent import __version__
from fwagent.core.context import ExecutionContext, create_context
from fwagent.core.output import console as app_console
from fwagent.core.config import DEFAULT_CONFIG_PATH, init_config
from fwagent.core.exceptions import FWError
from fwagent.services.backend import create_service


app = typer.Typer(
    name="fwagent",
    help="Firewall agent - manage port rules on firewalld and ufw hosts.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=True,
    pretty_exceptions_show_locals=False,
)

config_app = typer.Typer(
    name="config",
    help="Configuration management.",
    no_args_is_help=True,
)

from fwagent.commands.rules import app as rules_app

app.add_typer(rules_app, name="rules")
app.add_typer(config_app, name="config")


# Type aliases for common options
ForceOption = Annotated[
    bool,
    typer.Option(
        "--force",
        "-f",
        help="Overwrite an existing file.",
        is_flag=True,
    ),
]

VerboseOption = Annotated[
    int,
    typer.Option(
        "--verbose",
        "-v",
        count=True,
        help="Increase output verbosity. Can be repeated (-v, -vv).",
    ),
]

QuietOption = Annotated[
    bool,
    typer.Option(
        "--quiet",
        "-q",
        help="Suppress non-essential output. Only show errors.",
        is_flag=True,
    ),
]

NoColorOption = Annotated[
    bool,
    typer.Option(
        "--no-color",
        help="Disable colored output.",
        is_flag=True,
    ),
]

ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        help=f"Path to configuration file. Default: {DEFAULT_CONFIG_PATH}",
        exists=False,
        file_okay=True,
        dir_okay=False,
    ),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console = Console()
        console.print(f"fwagent version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """Firewall agent - manage port rules on firewalld and ufw hosts.

    Reads the host firewall into one rule model and applies rule changes
    back through firewall-cmd or ufw.

    [bold]Examples:[/bold]
        fwagent status
        fwagent rules list
        sudo fwagent rules add 80,443 --protocol tcp/udp --dry-run
        sudo fwagent rules convert
        fwagent config show
    """
    pass


def get_context(
    verbose: int = 0,
    quiet: bool = False,
    no_color: bool = False,
    config: Optional[Path] = None,
) -> ExecutionContext:
    """Create execution context from CLI options."""
    return create_context(
        verbose=verbose,
        quiet=quiet,
        no_color=no_color,
        config=config,
    )


def handle_error(error: FWError) -> None:
    """Handle an FWError by printing formatted error and exiting."""
    app_console.error(error.message)

    if error.details:
        for detail in error.details:
            app_console.print(f"  [dim]{detail}[/dim]")

    if error.hint:
        app_console.hint(error.hint)

    raise typer.Exit(error.exit_code)


# ============================================================================
# Status
# ============================================================================

@app.command("status")
def status(
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
) -> None:
    """Show the firewall backend and its state."""
    ctx = get_context(verbose=verbose, quiet=quiet, no_color=no_color, config=config)

    try:
        service = create_service(ctx, convert_on_start=False)
        info = service.status()
        info["Agent ID"] = ctx.config.agent_id or "(none)"
        ctx.console.summary("Firewall", info)
    except FWError as e:
        handle_error(e)


# ============================================================================
# Config commands
# ============================================================================

@config_app.command("show")
def config_show(
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
) -> None:
    """Show current configuration.

    Displays the loaded configuration and the environment overrides.
    """
    ctx = get_context(verbose=verbose, no_color=no_color, config=config)

    try:
        app_config = ctx.config

        ctx.console.print()
        ctx.console.print(f"[bold]Configuration file:[/bold] {ctx.config_path}")
        ctx.console.print(f"[bold]File exists:[/bold] {ctx.config_path.exists()}")
        ctx.console.print()

        ctx.console.yaml(app_config.config.to_yaml(), title="Configuration")

        env = app_config.env
        ctx.console.summary("Environment overrides", {
            "FWAGENT_AGENT_ID": env.fwagent_agent_id or "Not set",
            "FWAGENT_BACKEND": env.fwagent_backend or "Not set",
            "FWAGENT_ZONE": env.fwagent_zone or "Not set",
        })

    except FWError as e:
        handle_error(e)


@config_app.command("init")
def config_init(
    config: ConfigOption = None,
    force: ForceOption = False,
    no_color: NoColorOption = False,
) -> None:
    """Initialize a new configuration file.

    Creates a configuration file with defaults and comments.
    """
    ctx = get_context(no_color=no_color, config=config)
    config_path = ctx.config_path

    try:
        init_config(config_path, force=force)
        ctx.console.success(f"Configuration file created: {config_path}")
        ctx.console.info("Edit the file to customize settings, then run commands.")

    except FWError as e:
        handle_error(e)


if __name__ == "__main__":
    app()
