"""Canonical port rule model shared by every backend.

A ``CanonicalRule`` is the backend-neutral form of one firewall port rule.
Rules coming out of the firewalld and ufw parsers, and rules going into
the appliers, all use this shape.

Equality and hashing only cover the rule's identity. The observational
fields (``descriptor`` and ``in_use``) are carried along but never make
two rules different.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional

from fwagent.core.exceptions import ValidationError
from fwagent.services.network import ANY_SOURCE, is_any_source, is_ipv6


class RuleKind(str, Enum):
    """Kind of firewall rule. Only PORT rules are managed by the agent."""
    SERVICE = "SERVICE"
    PORT = "PORT"
    FORWARD_PORT = "FORWARD_PORT"
    MASQUERADE = "MASQUERADE"
    ICMP_BLOCK = "ICMP_BLOCK"
    RICH_RULE = "RICH_RULE"
    INTERFACE = "INTERFACE"
    SOURCE = "SOURCE"
    DIRECT_RULE = "DIRECT_RULE"


class Family(str, Enum):
    """IP family. BOTH is only meaningful on rules being written."""
    IPV4 = "ipv4"
    IPV6 = "ipv6"
    BOTH = "ipv4/ipv6"

    @classmethod
    def parse(cls, value: str) -> "Family":
        normalized = value.strip().lower()
        if normalized in ("both", "any", "ipv6/ipv4"):
            return cls.BOTH
        try:
            return cls(normalized)
        except ValueError:
            raise ValidationError(
                f"Invalid family: {value}",
                hint="Use ipv4, ipv6 or ipv4/ipv6",
            )

    @classmethod
    def of_source(cls, source: str) -> Optional["Family"]:
        """Family pinned by an explicit source address, None for any source."""
        if is_any_source(source):
            return None
        return cls.IPV6 if is_ipv6(source) else cls.IPV4

    def expand(self) -> list["Family"]:
        """Concrete families this value stands for."""
        if self is Family.BOTH:
            return [Family.IPV4, Family.IPV6]
        return [self]


@dataclass(frozen=True)
class CanonicalRule:
    """One port rule in backend-neutral form.

    Attributes:
        zone: firewalld zone; ufw rules always report "public"
        family: IP family
        port: "80", "1000-2000", or a comma list on rules being written
        protocol: "tcp", "udp", or a slash list on rules being written
        source: address or CIDR; 0.0.0.0 means any source
        policy: True allows, False rejects/drops
        permanent: rule survives a firewall reload
        agent_id: id of the host that owns the rule
        kind: rule kind, PORT for everything the agent manages
        in_use: a local process listens on the port (observational)
        descriptor: free-text description (observational)
    """
    port: str
    protocol: str
    family: Family = Family.IPV4
    source: str = ANY_SOURCE
    policy: bool = True
    zone: str = "public"
    permanent: bool = True
    agent_id: str = ""
    kind: RuleKind = RuleKind.PORT
    in_use: bool = field(default=False, compare=False)
    descriptor: str = field(default="", compare=False)

    @property
    def identity(self) -> tuple:
        """Tuple of the fields that decide equality."""
        return (
            self.family,
            self.port,
            self.protocol,
            self.source,
            self.policy,
            self.zone,
            self.kind,
            self.permanent,
            self.agent_id,
        )

    @property
    def is_compound(self) -> bool:
        """True if the rule still needs exploding before it can be applied."""
        return (
            "," in self.port
            or "/" in self.protocol
            or self.family is Family.BOTH
        )

    @property
    def action(self) -> str:
        """ufw action verb for this rule's policy."""
        return "allow" if self.policy else "reject"

    def with_changes(self, **changes: Any) -> "CanonicalRule":
        """Return a copy with some fields replaced."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the wire shape shared with the management side."""
        return {
            "zone": self.zone,
            "type": self.kind.value,
            "permanent": self.permanent,
            "agentId": self.agent_id,
            "family": self.family.value,
            "port": self.port,
            "protocol": self.protocol,
            "using": self.in_use,
            "policy": self.policy,
            "sourceRule": {"source": self.source},
            "descriptor": self.descriptor,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CanonicalRule":
        """Build a rule from the wire shape. Unknown keys are ignored.

        Raises:
            ValidationError: If port or protocol is missing, or an enum
                value is unknown
        """
        port = data.get("port")
        protocol = data.get("protocol")
        if not port or not protocol:
            raise ValidationError(
                "Rule must carry both port and protocol",
                details=[f"port={port!r}", f"protocol={protocol!r}"],
            )

        source_rule: Optional[dict[str, Any]] = data.get("sourceRule") or {}
        kind_value = data.get("type") or RuleKind.PORT.value
        try:
            kind = RuleKind(kind_value)
        except ValueError:
            raise ValidationError(f"Invalid rule type: {kind_value}")

        return cls(
            port=str(port),
            protocol=str(protocol).lower(),
            family=Family.parse(data.get("family") or Family.IPV4.value),
            source=source_rule.get("source") or ANY_SOURCE,
            policy=bool(data.get("policy", True)),
            zone=data.get("zone") or "public",
            permanent=bool(data.get("permanent", True)),
            agent_id=data.get("agentId") or "",
            kind=kind,
            in_use=bool(data.get("using") or False),
            descriptor=data.get("descriptor") or "",
        )

    def __str__(self) -> str:
        verb = "ALLOW" if self.policy else "REJECT"
        source = "anywhere" if self.source == ANY_SOURCE else self.source
        scope = "permanent" if self.permanent else "runtime"
        return f"{verb} {self.port}/{self.protocol} from {source} ({self.family.value}, {self.zone}, {scope})"


def explode(rule: CanonicalRule) -> list[CanonicalRule]:
    """Split a compound rule into atomic rules.

    Ports are split on ",", protocols on "/", and BOTH becomes one rule
    per family, or only the source's family when the source is explicit. The order is port, then protocol, then family. The input
    rule is not modified.
    """
    ports = [p.strip() for p in rule.port.split(",") if p.strip()]
    protocols = [p.strip().lower() for p in rule.protocol.split("/") if p.strip()]

    families = rule.family.expand()
    pinned = Family.of_source(rule.source)
    if pinned is not None and rule.family is Family.BOTH:
        families = [pinned]

    atomic: list[CanonicalRule] = []
    for port in ports:
        for protocol in protocols:
            for family in families:
                atomic.append(replace(rule, port=port, protocol=protocol, family=family))
    return atomic
