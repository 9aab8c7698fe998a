"""Conversion of generic ufw port rules into protocol-specific ones.

``ufw allow 80`` opens tcp and udp at once and silently adds a second
``80 (v6)`` rule. Canonical rules always carry one protocol, so such
rules are rewritten:

1. Decompose: every generic rule is deleted by number and replaced by a
   tcp and a udp rule with the same source and comment.
2. Prune: the leftover generic IPv6 twins of converted rules are deleted,
   re-listing before every pass because numbers shift after a delete.
"""

import re
from dataclasses import dataclass, field
from typing import Optional

from fwagent.core.context import ExecutionContext
from fwagent.core.exceptions import BackendExecutionError
from fwagent.services.decompose import run_checked
from fwagent.services.network import is_any_source
from fwagent.services.ufw import UFW, UfwService
from fwagent.services.ufw_status import StatusLine


GENERIC_PORT = re.compile(r"^\d+(:\d+)?$")
CONVERTIBLE_ACTIONS = ("ALLOW", "DENY", "REJECT")
PROTOCOLS = ("tcp", "udp")

DEFAULT_MAX_ITERATIONS = 5


def is_conversion_candidate(line: StatusLine) -> bool:
    """True for enabled, numbered, inbound rules on a bare numeric port."""
    raw_to = line.raw_to.lower()
    return (
        line.rule_number >= 0
        and line.enabled
        and line.direction == "IN"
        and line.action in CONVERTIBLE_ACTIONS
        and "tcp" not in raw_to
        and "udp" not in raw_to
        and not line.is_protocol_specific
        and bool(GENERIC_PORT.match(line.to))
    )


def replacement_commands(line: StatusLine) -> list[list[str]]:
    """The tcp and udp ``ufw`` commands replacing a generic rule."""
    commands = []
    for protocol in PROTOCOLS:
        command = [UFW, line.action.lower()]
        if is_any_source(line.from_):
            command.append(f"{line.to}/{protocol}")
        else:
            command.extend(["proto", protocol, "from", line.from_, "to", "any", "port", line.to])
        if line.comment:
            command.extend(["comment", line.comment])
        commands.append(command)
    return commands


@dataclass
class ConversionReport:
    """What a conversion run changed."""
    converted: int = 0
    added: int = 0
    pruned: int = 0
    failed_deletions: int = 0
    failed_additions: int = 0
    iterations: int = 0
    converged: bool = True
    converted_keys: set[tuple[str, str, str]] = field(default_factory=set)

    @property
    def changed(self) -> bool:
        return bool(self.converted or self.pruned)

    def summary(self) -> dict[str, object]:
        return {
            "Converted": self.converted,
            "Rules added": self.added,
            "IPv6 duplicates pruned": self.pruned,
            "Failed deletions": self.failed_deletions,
            "Failed additions": self.failed_additions,
            "Prune passes": self.iterations,
        }


class RuleConverter:
    """Runs the two-phase conversion against a live ufw."""

    def __init__(
        self,
        ctx: ExecutionContext,
        ufw: UfwService,
        *,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        timeout: Optional[int] = None,
    ) -> None:
        self.ctx = ctx
        self.ufw = ufw
        self.max_iterations = max_iterations
        self.timeout = timeout or ufw.timeouts.conversion_step

    def run(self) -> ConversionReport:
        """Convert generic rules, then prune their IPv6 twins.

        Command failures during either phase are counted and logged; only
        failing to list the rules aborts the run.

        Raises:
            BackendExecutionError: If ``ufw status numbered`` fails
        """
        report = ConversionReport()
        self.decompose(report)
        if report.converted_keys:
            self.prune(report)
        return report

    def _run(self, command: list[str], description: str) -> bool:
        try:
            run_checked(
                self.ufw.executor,
                command,
                timeout=self.timeout,
                idempotent=False,
                description=description,
            )
        except BackendExecutionError as e:
            self.ctx.console.warn(f"{description} failed: {e.message}")
            return False
        return True

    def _delete(self, line: StatusLine) -> bool:
        return self._run(
            [UFW, "--force", "delete", str(line.rule_number)],
            f"Delete ufw rule [{line.rule_number}] {line.to}",
        )

    def select_candidates(self, lines: list[StatusLine]) -> list[StatusLine]:
        """Generic rules to decompose, highest number first.

        An IPv6 row that mirrors an IPv4 candidate is left for the prune
        phase; replacing the IPv4 row already covers both families.
        """
        candidates = [line for line in lines if is_conversion_candidate(line)]
        ipv4_keys = {c.equivalence_key for c in candidates if not c.is_ipv6}
        candidates = [
            c for c in candidates
            if not (c.is_ipv6 and c.equivalence_key in ipv4_keys)
        ]
        return sorted(candidates, key=lambda c: c.rule_number, reverse=True)

    def decompose(self, report: ConversionReport) -> None:
        """Phase 1: replace each generic rule with tcp and udp rules."""
        candidates = self.select_candidates(self.ufw.list_rules())
        if not candidates:
            self.ctx.console.verbose("No generic ufw rules to convert")
            return

        self.ctx.console.info(f"Converting {len(candidates)} generic ufw rule(s)")
        for line in candidates:
            if not self._delete(line):
                report.failed_deletions += 1
                continue
            report.converted += 1
            report.converted_keys.add(line.equivalence_key)
            for command in replacement_commands(line):
                if self._run(command, f"Add {' '.join(command[1:])}"):
                    report.added += 1
                else:
                    report.failed_additions += 1

    def remaining_twins(self, report: ConversionReport) -> list[StatusLine]:
        """Live generic IPv6 rules whose IPv4 rule was converted, highest number first."""
        return sorted(
            (
                line for line in self.ufw.list_rules()
                if line.is_ipv6
                and is_conversion_candidate(line)
                and line.equivalence_key in report.converted_keys
            ),
            key=lambda line: line.rule_number,
            reverse=True,
        )

    def prune(self, report: ConversionReport) -> None:
        """Phase 2: delete generic IPv6 twins of converted rules."""
        for _ in range(self.max_iterations):
            report.iterations += 1
            twins = self.remaining_twins(report)
            if not twins:
                return

            deleted = 0
            for line in twins:
                if self._delete(line):
                    deleted += 1
                else:
                    report.failed_deletions += 1
            report.pruned += deleted

            # Nothing was really deleted, so another listing would be identical
            if deleted == 0 or self.ctx.dry_run:
                return

        # the last pass may have removed the final twins
        if not self.remaining_twins(report):
            return

        report.converged = False
        self.ctx.console.warn(
            f"Stopped pruning IPv6 rules after {self.max_iterations} passes; "
            "check 'ufw status numbered'"
        )
