"""ufw backend.

Reads ``ufw status`` into canonical rules and applies canonical rules
with ``ufw allow|reject proto Q from S to any port P``. Deletion goes by
rule number, looked up in the live numbered listing. Numbers shift after
every delete, so a batch resolves all numbers against one listing and
deletes from the highest number down.

ufw has no zones; every rule reports zone "public" and is permanent.
"""

import re
from typing import Iterable, Optional

from fwagent.core.config import TimeoutConfig
from fwagent.core.context import ExecutionContext
from fwagent.core.exceptions import FirewallError
from fwagent.core.executor import CommandExecutor
from fwagent.services.decompose import (
    ApplyResult,
    Operation,
    OperationType,
    decompose,
    run_checked,
)
from fwagent.services.network import is_any_source
from fwagent.services.port_usage import NullPortUsageProbe, PortUsageProbe
from fwagent.services.reconcile import expand_protocols, merge_ordered
from fwagent.services.rules import CanonicalRule, Family
from fwagent.services.ufw_status import StatusLine, UfwStatus, parse_numbered_rules


UFW = "ufw"
UFW_ZONE = "public"

# "80", "80/tcp", "6000:6007", "6000:6007/udp"
PORT_TARGET = re.compile(r"^(?:\d{1,5}:\d{1,5}(?:/\w+)?|\d{1,5}/\w+|\d{1,5})$")
PORT_WITH_PROTOCOL = re.compile(r"^(.*?)/(tcp|udp)\b")

ANY_SOURCE_BY_FAMILY = {Family.IPV4: "0.0.0.0/0", Family.IPV6: "::/0"}


def _ufw_source(line: StatusLine) -> str:
    return "0.0.0.0" if is_any_source(line.from_) else line.from_


def _split_target(to: str) -> tuple[str, Optional[str]]:
    """Split ``80/tcp`` into ("80", "tcp"); a bare port has no protocol."""
    match = PORT_WITH_PROTOCOL.match(to)
    if match:
        return match.group(1), match.group(2)
    return to, None


def _is_port_rule(line: StatusLine) -> bool:
    return (
        bool(PORT_TARGET.match(line.to))
        and line.direction != "OUT"
        and line.action != "LIMIT"
    )


class UfwService:
    """Port rules on a ufw host."""

    name = "ufw"

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        *,
        agent_id: str = "",
        usage: Optional[PortUsageProbe] = None,
        timeouts: Optional[TimeoutConfig] = None,
    ) -> None:
        self.ctx = ctx
        self.executor = executor
        self.agent_id = agent_id
        self.zone = UFW_ZONE
        self.timeouts = timeouts or TimeoutConfig()
        self.usage: PortUsageProbe = usage or NullPortUsageProbe()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _read(self, *args: str) -> str:
        result = run_checked(
            self.executor,
            [UFW, *args],
            timeout=self.timeouts.status,
            idempotent=False,
            read_only=True,
        )
        return result.stdout

    def read_status(self) -> UfwStatus:
        """Parse ``ufw status verbose`` and ``ufw status numbered``."""
        return UfwStatus.parse(self._read("status", "verbose"), self._read("status", "numbered"))

    def list_rules(self) -> list[StatusLine]:
        """Numbered rule rows, ordered by rule number."""
        return parse_numbered_rules(self._read("status", "numbered"))

    def is_active(self) -> bool:
        return self.read_status().active

    def status(self) -> dict[str, object]:
        """Summary fields for display."""
        status = self.read_status()
        return {
            "Backend": self.name,
            "Active": status.active,
            "Logging": status.logging_level or "off",
            "Default incoming": status.default_incoming or "unknown",
            "Default outgoing": status.default_outgoing or "unknown",
            "Default routed": status.default_routed or "unknown",
            "Rules": len(status.rules),
        }

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def query(
        self,
        zone: Optional[str] = None,
        *,
        in_use: Optional[bool] = None,
        policy: Optional[bool] = None,
    ) -> list[CanonicalRule]:
        """List port rules. ``zone`` is accepted for symmetry and ignored."""
        rules = self.rules_from_status(self.read_status().rules)
        if policy is not None:
            rules = [r for r in rules if r.policy == policy]
        if in_use is not None:
            rules = [r for r in rules if r.in_use == in_use]
        return rules

    def rules_from_status(self, lines: Iterable[StatusLine]) -> list[CanonicalRule]:
        """Canonical rules for the inbound, non-LIMIT port rows.

        A row without a protocol applies to tcp and udp and yields one
        rule for each.
        """
        rules = []
        for line in lines:
            if not _is_port_rule(line):
                continue
            port, protocol = _split_target(line.to)
            family = Family.IPV6 if line.is_ipv6 else Family.IPV4
            base = CanonicalRule(
                port=port.replace(":", "-"),
                protocol=protocol or "tcp/udp",
                family=family,
                source=_ufw_source(line),
                policy=line.action == "ALLOW",
                zone=UFW_ZONE,
                permanent=True,
                agent_id=self.agent_id,
                descriptor=line.comment or "",
            )
            for rule in expand_protocols(base):
                processes = self.usage.processes_using(rule.port, rule.protocol, family.value)
                rules.append(rule.with_changes(in_use=bool(processes)))
        return merge_ordered(rules, [])

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def insert(self, rules: Iterable[CanonicalRule], zone: Optional[str] = None) -> ApplyResult:
        """Add rules; see :meth:`apply`."""
        return self.apply(rules, OperationType.INSERT, zone)

    def delete(self, rules: Iterable[CanonicalRule], zone: Optional[str] = None) -> ApplyResult:
        """Remove rules; see :meth:`apply`."""
        return self.apply(rules, OperationType.DELETE, zone)

    def update(
        self,
        old: CanonicalRule,
        new: CanonicalRule,
        zone: Optional[str] = None,
    ) -> ApplyResult:
        """Replace a rule: delete the old one, then insert the new one."""
        removed = self.delete([old], zone)
        try:
            added = self.insert([new], zone)
        except FirewallError as e:
            if hasattr(e, "applied"):
                e.applied = removed.applied + e.applied
            raise
        return ApplyResult(applied=removed.applied + added.applied)

    def apply(
        self,
        rules: Iterable[CanonicalRule],
        operation: OperationType,
        zone: Optional[str] = None,
    ) -> ApplyResult:
        """Apply a batch of rules, fail-fast, without rollback.

        Raises:
            ValidationError: If a rule spec is invalid
            FirewallError: If a delete target matches several ufw rows
            BackendExecutionError: If a ufw command fails
        """
        atomic = [a for rule in rules for a in decompose(rule, range_separator=":")]
        if operation is OperationType.INSERT:
            operations = [
                Operation(operation, rule, self.insert_command(rule)) for rule in atomic
            ]
        else:
            operations = self.delete_operations(atomic)

        result = ApplyResult()
        for op in operations:
            run_checked(
                self.executor,
                op.command,
                timeout=self.timeouts.mutation,
                applied=result.applied,
                idempotent=False,
                description=str(op),
            )
            result.applied.append(op)
        return result

    @staticmethod
    def insert_command(rule: CanonicalRule) -> tuple[str, ...]:
        """``ufw allow|reject proto Q from S to any port P [comment D]``."""
        source = rule.source
        if is_any_source(source):
            source = ANY_SOURCE_BY_FAMILY[rule.family]
        command: tuple[str, ...] = (
            UFW, rule.action, "proto", rule.protocol,
            "from", source, "to", "any", "port", rule.port.replace("-", ":"),
        )
        if rule.descriptor:
            command += ("comment", rule.descriptor)
        return command

    def delete_operations(self, atomic: list[CanonicalRule]) -> list[Operation]:
        """Resolve rule numbers once and order deletes highest first."""
        listing = self.list_rules()
        numbered: dict[int, CanonicalRule] = {}
        for rule in atomic:
            number = self.find_rule_number(rule, listing)
            if number < 0:
                self.ctx.console.warn(f"No ufw rule matches {rule}; nothing to delete")
                continue
            numbered.setdefault(number, rule)

        return [
            Operation(OperationType.DELETE, numbered[n], (UFW, "--force", "delete", str(n)))
            for n in sorted(numbered, reverse=True)
        ]

    def find_rule_number(
        self,
        rule: CanonicalRule,
        listing: Optional[list[StatusLine]] = None,
    ) -> int:
        """Number of the single ufw row matching an atomic rule, or -1.

        Matches port, action, source, family and protocol. Rows without a
        protocol never match; convert them first.

        Raises:
            FirewallError: If more than one row matches
        """
        if listing is None:
            listing = self.list_rules()

        port = rule.port.replace("-", ":")
        candidates = []
        for line in listing:
            if line.action == "LIMIT" or line.direction == "OUT":
                continue
            line_port, line_protocol = _split_target(line.to)
            if line_port != port or line_protocol != rule.protocol:
                continue
            if (line.action == "ALLOW") != rule.policy:
                continue
            if _ufw_source(line) != ("0.0.0.0" if is_any_source(rule.source) else rule.source):
                continue
            if line.is_ipv6 != (rule.family is Family.IPV6):
                continue
            candidates.append(line)

        if len(candidates) > 1:
            raise FirewallError(
                f"Several ufw rules match {rule}",
                rule=str(rule),
                details=[str(c) for c in candidates],
                hint="Delete by number with: ufw --force delete N",
            )
        if not candidates:
            return -1
        return candidates[0].rule_number
