"""Turning requested rules into atomic backend operations.

Both appliers share the same pipeline: validate the rule, explode it into
single port/protocol/family rules, then hand each one to a backend
specific command builder. Exit-code handling lives here too, since
firewall-cmd reports "already there" and "already gone" as distinct
non-zero codes that must count as success.
"""

import shlex
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence

from fwagent.core.exceptions import BackendExecutionError, ExecutionError, ValidationError
from fwagent.core.executor import CommandExecutor, CommandResult
from fwagent.services.network import (
    validate_port_spec,
    validate_protocol_spec,
    validate_source,
)
from fwagent.services.rules import CanonicalRule, Family, RuleKind, explode


# firewall-cmd exit codes that mean the requested state already holds
ALREADY_ENABLED = 11
NOT_ENABLED = 12
ZONE_ALREADY_SET = 16
ALREADY_SET = 34

IDEMPOTENT_EXIT_CODES = frozenset({ALREADY_ENABLED, NOT_ENABLED, ZONE_ALREADY_SET, ALREADY_SET})


class OperationType(str, Enum):
    """Direction of a rule change."""
    INSERT = "insert"
    DELETE = "delete"


@dataclass(frozen=True)
class Operation:
    """One atomic rule change and the command that performs it."""
    type: OperationType
    rule: CanonicalRule
    command: tuple[str, ...]

    def __str__(self) -> str:
        return f"{self.type.value} {self.rule}"


@dataclass
class ApplyResult:
    """Outcome of a successful batch."""
    applied: list[Operation] = field(default_factory=list)
    reloaded: bool = False

    @property
    def count(self) -> int:
        return len(self.applied)


def is_success_code(return_code: int, *, idempotent: bool = True) -> bool:
    """True for 0, and for firewalld's idempotent codes when allowed."""
    if return_code == 0:
        return True
    return idempotent and return_code in IDEMPOTENT_EXIT_CODES


def validate_rule(rule: CanonicalRule) -> None:
    """Reject a rule spec before anything reaches a backend.

    Raises:
        ValidationError: If the rule is not a port rule, or its port,
            protocol or source is missing or malformed, or the
            source belongs to a different family than the one requested
    """
    if rule.kind is not RuleKind.PORT:
        raise ValidationError(
            f"Unsupported rule type: {rule.kind.value}",
            hint="Only PORT rules can be applied",
        )
    validate_port_spec(rule.port)
    validate_protocol_spec(rule.protocol)
    validate_source(rule.source)
    pinned = Family.of_source(rule.source)
    if pinned is not None and rule.family not in (pinned, Family.BOTH):
        raise ValidationError(
            f"Source {rule.source} is {pinned.value} but the rule is {rule.family.value}",
            hint="Use the source's own family, or both",
        )


def normalize_port_range(port: str, separator: str) -> str:
    """Rewrite a range with the backend's separator (``-`` or ``:``)."""
    return port.replace("-", separator).replace(":", separator)


def decompose(rule: CanonicalRule, *, range_separator: str = "-") -> list[CanonicalRule]:
    """Validate and explode a rule into atomic rules.

    ``80,443`` with ``tcp/udp`` yields four rules; family BOTH doubles
    that. Port ranges are rewritten with ``range_separator``.

    Raises:
        ValidationError: If the rule spec is invalid
    """
    validate_rule(rule)
    return [
        r.with_changes(port=normalize_port_range(r.port, range_separator))
        for r in explode(rule)
    ]


def run_checked(
    executor: CommandExecutor,
    command: Sequence[str],
    *,
    timeout: int,
    applied: Optional[list[Operation]] = None,
    idempotent: bool = True,
    read_only: bool = False,
    description: Optional[str] = None,
) -> CommandResult:
    """Run one backend command and translate failures.

    Args:
        executor: Command executor
        command: argv to run
        timeout: Timeout in seconds
        applied: Operations already applied in this batch, attached to
            the error on failure
        idempotent: Accept firewalld's "already in that state" codes
        read_only: Command only reads state
        description: Step message for the console

    Raises:
        BackendExecutionError: On timeout, missing binary, or a failing
            exit code
    """
    try:
        result = executor.run(
            list(command),
            description=description,
            check=False,
            read_only=read_only,
            timeout=timeout,
        )
    except ExecutionError as e:
        raise BackendExecutionError(
            e.message,
            command=e.command,
            applied=applied,
            hint=e.hint,
        ) from e

    if not is_success_code(result.return_code, idempotent=idempotent):
        raise BackendExecutionError(
            f"Firewall command failed with exit code {result.return_code}",
            command=shlex.join(command),
            return_code=result.return_code,
            stdout=result.stdout,
            stderr=result.stderr,
            applied=applied,
        )
    return result
