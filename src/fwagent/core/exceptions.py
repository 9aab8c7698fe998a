"""Custom exceptions for the firewall agent.

All exceptions provide:
- Clear error messages
- Optional hints for resolution
- Optional details for debugging
- Exit codes for proper shell integration
"""

from typing import Any, Optional


class FWError(Exception):
    """Base exception for all fwagent errors.

    Attributes:
        message: Human-readable error description
        hint: Suggested action to resolve the error
        details: Additional context for debugging
        exit_code: Shell exit code (1-127)
    """

    exit_code: int = 1

    def __init__(
        self,
        message: str,
        *,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.details = details or []

    def __str__(self) -> str:
        return self.message


class ConfigurationError(FWError):
    """Configuration file or settings errors.

    Raised when:
    - Config file unreadable
    - Invalid YAML syntax
    - Invalid configuration values
    """
    exit_code = 2


class ValidationError(FWError):
    """Invalid rule specification.

    Raised before any backend call when a rule is missing its port or
    protocol, or carries a malformed port, protocol or source.
    """
    exit_code = 3


class ExecutionError(FWError):
    """Command execution failures at the executor level."""
    exit_code = 5

    def __init__(
        self,
        message: str,
        *,
        command: Optional[str] = None,
        return_code: Optional[int] = None,
        stderr: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        if not details:
            details = []
        if return_code is not None:
            details.append(f"Exit code: {return_code}")
        if stderr:
            details.append(f"Error output: {stderr}")
        super().__init__(message, hint=hint, details=details)
        self.command = command
        self.return_code = return_code
        self.stderr = stderr


class PrerequisiteError(FWError):
    """No supported firewall backend found on this host."""
    exit_code = 6


# Domain-specific exceptions

class FirewallError(FWError):
    """Firewall backend errors.

    Raised when:
    - firewall-cmd or ufw fails
    - A rule cannot be resolved on the live system
    """
    exit_code = 15

    def __init__(
        self,
        message: str,
        *,
        rule: Optional[str] = None,
        zone: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.rule = rule
        self.zone = zone


class BackendExecutionError(FirewallError):
    """A backend command exited with a non-idempotent failure code.

    Carries the command output and the atomic operations that were
    already applied in the same batch. Those are not rolled back.
    """
    exit_code = 16

    def __init__(
        self,
        message: str,
        *,
        command: Optional[str] = None,
        return_code: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
        applied: Optional[list[Any]] = None,
        rule: Optional[str] = None,
        zone: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        if not details:
            details = []
        if command:
            details.append(f"Command: {command}")
        if return_code is not None:
            details.append(f"Exit code: {return_code}")
        if stderr.strip():
            details.append(f"Error output: {stderr.strip()}")
        elif stdout.strip():
            details.append(f"Output: {stdout.strip()}")
        super().__init__(message, rule=rule, zone=zone, hint=hint, details=details)
        self.command = command
        self.return_code = return_code
        self.stdout = stdout
        self.stderr = stderr
        self.applied = list(applied or [])


class ZoneMissingError(FirewallError):
    """The firewalld zone does not exist."""
    exit_code = 17
