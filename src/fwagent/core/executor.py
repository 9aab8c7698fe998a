"""Command execution for firewall backends.

Provides:
- Safe command execution with output capture
- Per-call timeouts
- Dry-run mode support (read-only commands still run)
"""

import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from fwagent.core.context import ExecutionContext
from fwagent.core.exceptions import ExecutionError


@dataclass
class CommandResult:
    """Result of a command execution."""
    command: list[str]
    return_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        """Check if command succeeded."""
        return self.return_code == 0


class CommandExecutor:
    """Safe command execution with dry-run support and output capture.

    Commands that only read state (``read_only=True``) execute even in
    dry-run mode, so a dry run can still plan against the live rule set.
    """

    def __init__(self, ctx: ExecutionContext, *, use_sudo: bool = False) -> None:
        self.ctx = ctx
        self.use_sudo = use_sudo

    def run(
        self,
        command: list[str],
        *,
        description: Optional[str] = None,
        check: bool = True,
        capture: bool = True,
        read_only: bool = False,
        timeout: Optional[int] = None,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Path] = None,
    ) -> CommandResult:
        """Execute a command safely.

        Args:
            command: Command as list of strings
            description: Human-readable description for logging
            check: Raise exception on non-zero exit
            capture: Capture stdout/stderr
            read_only: Command does not change state; run it in dry-run too
            timeout: Command timeout in seconds
            env: Additional environment variables
            cwd: Working directory

        Returns:
            CommandResult with output

        Raises:
            ExecutionError: If command fails and check=True, times out,
                or the binary is missing
        """
        if self.use_sudo and command[:1] != ["sudo"]:
            command = ["sudo", "-n"] + command

        if description:
            self.ctx.console.step(description)

        cmd_display = shlex.join(command)
        self.ctx.console.debug(f"Running: {cmd_display}")

        if self.ctx.dry_run and not read_only:
            self.ctx.console.dry_run_msg(f"Run: {cmd_display}")
            return CommandResult(
                command=command,
                return_code=0,
                stdout="",
                stderr="",
            )

        run_env = None
        if env:
            run_env = os.environ.copy()
            run_env.update(env)

        try:
            result = subprocess.run(
                command,
                capture_output=capture,
                text=True,
                timeout=timeout,
                env=run_env,
                cwd=cwd,
            )
        except subprocess.TimeoutExpired:
            raise ExecutionError(
                f"Command timed out after {timeout}s: {description or cmd_display}",
                command=cmd_display,
            )
        except FileNotFoundError:
            raise ExecutionError(
                f"Command not found: {command[0]}",
                command=cmd_display,
                hint=f"Install {command[0]} or check PATH",
            )

        cmd_result = CommandResult(
            command=command,
            return_code=result.returncode,
            stdout=result.stdout if capture else "",
            stderr=result.stderr if capture else "",
        )

        if check and result.returncode != 0:
            raise ExecutionError(
                f"Command failed: {description or cmd_display}",
                command=cmd_display,
                return_code=result.returncode,
                stderr=result.stderr if capture else None,
            )

        return cmd_result
