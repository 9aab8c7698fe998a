"""firewalld backend.

Reads a zone's state from ``firewall-cmd`` (plain port list plus rich
rules) into canonical rules, and applies canonical rules back as
family-scoped rich rules.

Rule shapes written:
- with a source: ``rule family="F" source address="S" port port="P" protocol="Q" accept|reject``
- without one:   ``rule family="F" port port="P" protocol="Q" accept|reject``

Deleting an any-source rule also clears a matching plain port entry.
``--remove-port`` is not family scoped, so the other family is re-added
as a rich rule to keep it open.
"""

import re
from typing import Iterable, Optional, Protocol

from rich.markup import escape

from fwagent.core.config import TimeoutConfig
from fwagent.core.context import ExecutionContext
from fwagent.core.exceptions import BackendExecutionError, ZoneMissingError
from fwagent.core.executor import CommandExecutor
from fwagent.services.decompose import (
    ApplyResult,
    Operation,
    OperationType,
    decompose,
    run_checked,
)
from fwagent.services.network import ANY_SOURCE
from fwagent.services.port_usage import NullPortUsageProbe, PortUsageProbe
from fwagent.services.reconcile import expand_protocols, merge_ordered
from fwagent.services.rich_grammar import RichRule
from fwagent.services.rich_rule import parse_rich_rule
from fwagent.services.rules import CanonicalRule, Family


FIREWALL_CMD = "firewall-cmd"

# Entries of --list-ports; the protocol is optional
PLAIN_PORT_ENTRY = re.compile(r"^(\d+(?:-\d+)?)(?:/(tcp|udp))?$")


class ZoneQuery(Protocol):
    """Read access to firewalld zones.

    Implemented over the CLI by ``FirewallCmdZoneQuery``; a D-Bus client
    can stand in as long as it returns the same text forms.
    """

    def list_zones(self) -> list[str]:
        ...

    def list_ports(self, zone: str, *, permanent: bool = False) -> list[str]:
        ...

    def list_rich_rules(self, zone: str, *, permanent: bool = False) -> list[str]:
        ...

    def query_port(self, zone: str, port: str, protocol: str, *, permanent: bool = False) -> bool:
        ...


class FirewallCmdZoneQuery:
    """ZoneQuery over ``firewall-cmd``."""

    def __init__(self, executor: CommandExecutor, timeout: int = 10) -> None:
        self.executor = executor
        self.timeout = timeout

    def _read(self, args: list[str], *, permanent: bool = False) -> str:
        command = [FIREWALL_CMD]
        if permanent:
            command.append("--permanent")
        command.extend(args)
        result = run_checked(
            self.executor,
            command,
            timeout=self.timeout,
            idempotent=False,
            read_only=True,
        )
        return result.stdout

    def list_zones(self) -> list[str]:
        return self._read(["--get-zones"]).split()

    def list_ports(self, zone: str, *, permanent: bool = False) -> list[str]:
        return self._read([f"--zone={zone}", "--list-ports"], permanent=permanent).split()

    def list_rich_rules(self, zone: str, *, permanent: bool = False) -> list[str]:
        output = self._read([f"--zone={zone}", "--list-rich-rules"], permanent=permanent)
        return [line.strip() for line in output.splitlines() if line.strip()]

    def query_port(self, zone: str, port: str, protocol: str, *, permanent: bool = False) -> bool:
        command = [FIREWALL_CMD]
        if permanent:
            command.append("--permanent")
        command.extend([f"--zone={zone}", f"--query-port={port}/{protocol}"])
        result = self.executor.run(
            command,
            check=False,
            read_only=True,
            timeout=self.timeout,
        )
        # 0 = yes, 1 = no; anything else is a real error
        if result.return_code not in (0, 1):
            raise BackendExecutionError(
                f"Cannot query port {port}/{protocol} in zone {zone}",
                command=" ".join(command),
                return_code=result.return_code,
                stdout=result.stdout,
                stderr=result.stderr,
                zone=zone,
            )
        return result.return_code == 0


def build_rich_rule(rule: CanonicalRule, family: Optional[Family] = None) -> str:
    """Render an atomic rule as a rich-rule string."""
    rich = RichRule()
    rich.add_simple("family", (family or rule.family).value)
    if rule.source != ANY_SOURCE:
        rich.add_composite("source", address=rule.source)
    rich.add_composite("port", port=rule.port, protocol=rule.protocol)
    rich.add_flag("accept" if rule.policy else "reject")
    return str(rich)


def _opposite(family: Family) -> Family:
    return Family.IPV6 if family is Family.IPV4 else Family.IPV4


class FirewalldService:
    """Port rules on a firewalld host."""

    name = "firewalld"

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        *,
        zone: str = "public",
        agent_id: str = "",
        zones: Optional[ZoneQuery] = None,
        usage: Optional[PortUsageProbe] = None,
        timeouts: Optional[TimeoutConfig] = None,
    ) -> None:
        self.ctx = ctx
        self.executor = executor
        self.zone = zone
        self.agent_id = agent_id
        self.timeouts = timeouts or TimeoutConfig()
        self.zones: ZoneQuery = zones or FirewallCmdZoneQuery(executor, self.timeouts.status)
        self.usage: PortUsageProbe = usage or NullPortUsageProbe()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def is_active(self) -> bool:
        """Check if the firewalld daemon is running."""
        result = self.executor.run(
            [FIREWALL_CMD, "--state"],
            check=False,
            read_only=True,
            timeout=self.timeouts.status,
        )
        return result.success and result.stdout.strip() == "running"

    def status(self) -> dict[str, object]:
        """Summary fields for display."""
        active = self.is_active()
        info: dict[str, object] = {"Backend": self.name, "Active": active, "Zone": self.zone}
        if active:
            result = self.executor.run(
                [FIREWALL_CMD, "--get-default-zone"],
                check=False,
                read_only=True,
                timeout=self.timeouts.status,
            )
            if result.success:
                info["Default zone"] = result.stdout.strip()
        return info

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
        """List a zone's port rules, deduplicated.

        Args:
            zone: Zone to read (defaults to the configured zone)
            in_use: Keep only rules whose port is / is not in use
            policy: Keep only allowing (True) or denying (False) rules

        Raises:
            ZoneMissingError: If the zone does not exist
            BackendExecutionError: If firewall-cmd fails
        """
        zone = zone or self.zone
        if zone not in self.zones.list_zones():
            raise ZoneMissingError(
                f"Zone {zone} does not exist",
                zone=zone,
                hint="List zones with: firewall-cmd --get-zones",
            )

        rich_lines = self.zones.list_rich_rules(zone)
        rich_permanent = set(self.zones.list_rich_rules(zone, permanent=True))
        port_entries = self.zones.list_ports(zone)
        ports_permanent = set(self.zones.list_ports(zone, permanent=True))

        rules = merge_ordered(
            self.rules_from_rich_rules(zone, rich_lines, rich_permanent),
            self.rules_from_port_entries(zone, port_entries, ports_permanent),
        )
        self.ctx.console.debug(f"Zone {zone}: {len(rules)} port rules")

        if policy is not None:
            rules = [r for r in rules if r.policy == policy]
        if in_use is not None:
            rules = [r for r in rules if r.in_use == in_use]
        return rules

    def rules_from_rich_rules(
        self,
        zone: str,
        lines: Iterable[str],
        permanent_lines: set[str],
    ) -> list[CanonicalRule]:
        """Canonical rules from ``--list-rich-rules`` output lines."""
        rules = []
        for line in lines:
            for fragment in parse_rich_rule(line, permanent=line in permanent_lines):
                processes = self.usage.processes_using(
                    fragment.port, fragment.protocol, fragment.family
                )
                rules.append(CanonicalRule(
                    port=fragment.port,
                    protocol=fragment.protocol,
                    family=Family(fragment.family),
                    source=fragment.source,
                    policy=fragment.allows,
                    zone=zone,
                    permanent=fragment.permanent,
                    agent_id=self.agent_id,
                    in_use=bool(processes),
                    descriptor=fragment.description,
                ))
        return rules

    def rules_from_port_entries(
        self,
        zone: str,
        entries: Iterable[str],
        permanent_entries: set[str],
    ) -> list[CanonicalRule]:
        """Canonical rules from ``--list-ports`` entries.

        Each entry opens the port for both families and every source, so
        it yields an ipv4 and an ipv6 allow rule. An entry without a
        protocol stands for both tcp and udp.
        """
        rules = []
        for entry in entries:
            match = PLAIN_PORT_ENTRY.match(entry.strip())
            if not match:
                self.ctx.console.debug(f"Skipping port entry: {escape(entry)}")
                continue
            base = CanonicalRule(
                port=match.group(1),
                protocol=match.group(2) or "",
                zone=zone,
                permanent=entry in permanent_entries,
                agent_id=self.agent_id,
            )
            for rule in expand_protocols(base):
                for family in (Family.IPV4, Family.IPV6):
                    processes = self.usage.processes_using(rule.port, rule.protocol, family.value)
                    rules.append(rule.with_changes(
                        family=family,
                        in_use=bool(processes),
                        descriptor=",".join(processes),
                    ))
        return rules

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
        except BackendExecutionError as e:
            e.applied = removed.applied + e.applied
            raise
        return ApplyResult(
            applied=removed.applied + added.applied,
            reloaded=removed.reloaded or added.reloaded,
        )

    def apply(
        self,
        rules: Iterable[CanonicalRule],
        operation: OperationType,
        zone: Optional[str] = None,
    ) -> ApplyResult:
        """Apply a batch of rules, fail-fast.

        Every rule is validated before any command runs. Operations run in
        order; the first failure aborts the batch and the raised error
        lists what was already applied. Nothing is rolled back. A reload
        follows when any rule in the batch is permanent.

        Raises:
            ValidationError: If a rule spec is invalid
            ZoneMissingError: If deleting from a zone that does not exist
            BackendExecutionError: If a command fails
        """
        zone = zone or self.zone
        atomic = [a for rule in rules for a in decompose(rule, range_separator="-")]
        if not atomic:
            return ApplyResult()

        result = ApplyResult()
        if self.ensure_zone(zone, operation):
            result.reloaded = True

        needs_reload = False
        for rule in atomic:
            for op in self.operations_for(zone, rule, operation):
                run_checked(
                    self.executor,
                    op.command,
                    timeout=self.timeouts.mutation,
                    applied=result.applied,
                    description=str(op),
                )
                result.applied.append(op)
            needs_reload = needs_reload or rule.permanent

        if needs_reload:
            self.reload(applied=result.applied)
            result.reloaded = True
        return result

    def operations_for(
        self,
        zone: str,
        rule: CanonicalRule,
        operation: OperationType,
    ) -> list[Operation]:
        """Commands for one atomic rule.

        Built right before they run: the delete path checks the live
        plain port list, which earlier operations may have changed.
        """
        verb = "add" if operation is OperationType.INSERT else "remove"
        suffix = ["--permanent"] if rule.permanent else []

        def rich_command(target: CanonicalRule, action: str, family: Optional[Family] = None) -> tuple[str, ...]:
            text = build_rich_rule(target, family)
            return (FIREWALL_CMD, f"--zone={zone}", f"--{action}-rich-rule={text}", *suffix)

        ops = [Operation(operation, rule, rich_command(rule, verb))]
        # plain --list-ports entries are always allow rules
        if operation is OperationType.DELETE and rule.policy and rule.source == ANY_SOURCE:
            if self.zones.query_port(zone, rule.port, rule.protocol, permanent=rule.permanent):
                ops.append(Operation(
                    operation,
                    rule,
                    (FIREWALL_CMD, f"--zone={zone}", f"--remove-port={rule.port}/{rule.protocol}", *suffix),
                ))
                other = rule.with_changes(family=_opposite(rule.family))
                ops.append(Operation(
                    OperationType.INSERT,
                    other,
                    rich_command(other, "add"),
                ))
        return ops

    def ensure_zone(self, zone: str, operation: OperationType) -> bool:
        """Make sure the zone exists before mutating it.

        Returns:
            True if the zone was created (and firewalld reloaded)

        Raises:
            ZoneMissingError: If deleting from a zone that does not exist
        """
        if zone in self.zones.list_zones():
            return False
        if operation is OperationType.DELETE:
            raise ZoneMissingError(
                f"Zone {zone} does not exist",
                zone=zone,
                hint="Nothing to delete; check the zone name",
            )

        self.ctx.console.step(f"Creating firewalld zone {zone}")
        run_checked(
            self.executor,
            [FIREWALL_CMD, "--permanent", f"--new-zone={zone}"],
            timeout=self.timeouts.mutation,
        )
        self.reload()
        return True

    def reload(self, applied: Optional[list[Operation]] = None) -> None:
        """Reload firewalld so permanent changes take effect."""
        run_checked(
            self.executor,
            [FIREWALL_CMD, "--reload"],
            timeout=self.timeouts.reload,
            applied=applied,
            description="Reload firewalld",
        )
