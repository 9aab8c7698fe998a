"""Per-invocation state shared by the CLI, services and executor."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from fwagent.core.config import AppConfig, DEFAULT_CONFIG_PATH
from fwagent.core.output import Console, console, Verbosity


@dataclass
class ExecutionContext:
    """Flags for one fwagent run.

    Attributes:
        dry_run: Print mutating firewall commands instead of running them
        yes: Answer yes to confirmation prompts
        verbosity: Output verbosity level (0-3)
        no_color: Disable colored output
        config_path: Machine configuration file
    """

    dry_run: bool = False
    yes: bool = False
    verbosity: int = Verbosity.NORMAL
    no_color: bool = False
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG_PATH)

    _config: Optional[AppConfig] = field(default=None, repr=False)
    _console: Console = field(default_factory=lambda: console, repr=False)

    def __post_init__(self) -> None:
        self._console.configure(
            verbosity=self.verbosity,
            dry_run=self.dry_run,
            no_color=self.no_color,
        )

    @property
    def config(self) -> AppConfig:
        """Machine configuration, loaded on first access."""
        if self._config is None:
            self._config = AppConfig(config_path=self.config_path)
        return self._config

    @property
    def console(self) -> Console:
        return self._console


def create_context(
    dry_run: bool = False,
    yes: bool = False,
    verbose: int = 0,
    quiet: bool = False,
    no_color: bool = False,
    config: Optional[Path] = None,
) -> ExecutionContext:
    """Build the context from the global CLI options.

    ``--quiet`` wins over ``-v``; repeated ``-v`` stops at debug level.
    """
    if quiet:
        verbosity = Verbosity.QUIET
    else:
        verbosity = min(Verbosity.NORMAL + verbose, Verbosity.DEBUG)

    return ExecutionContext(
        dry_run=dry_run,
        yes=yes,
        verbosity=verbosity,
        no_color=no_color,
        config_path=config or DEFAULT_CONFIG_PATH,
    )
