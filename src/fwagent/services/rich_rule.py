"""Positional parser for firewalld rich-rule strings.

A rich rule such as

    rule family="ipv4" source address="10.0.0.0/8" port port="22" protocol="tcp" accept

can name several ports, sources and log prefixes. The parser scans for
each kind independently, records match offsets, and scopes a port to the
source written before it. Text order is the scoping rule firewalld users
rely on, so the resolution is by offset and nothing else.
"""

import bisect
import re
from dataclasses import dataclass
from typing import Optional

from rich.markup import escape

from fwagent.core.output import console
from fwagent.services.network import ANY_SOURCE


PORT_DECL = re.compile(r'port port="(\d+(?:-\d+)?)" protocol="(\w+)"')
SOURCE_DECL = re.compile(r'source address="([^"]+)"')
LOG_PREFIX_DECL = re.compile(r'log prefix="([^"]+)"')
FAMILY_DECL = re.compile(r'family="(ipv[46])"')

POLICIES = ("accept", "reject", "drop")
PERMANENT_FLAG = "--permanent"


@dataclass(frozen=True)
class ParsedFragment:
    """One port/protocol/family slice of a rich rule."""
    port: str
    protocol: str
    source: str
    policy: str
    description: str
    family: str
    permanent: bool = False

    @property
    def allows(self) -> bool:
        return self.policy == "accept"


class _OffsetIndex:
    """Values of one declaration kind, sorted by their offset in the text."""

    def __init__(self, pattern: re.Pattern, text: str) -> None:
        matches = sorted(pattern.finditer(text), key=lambda m: m.start())
        self.offsets = [m.start() for m in matches]
        self.values = [m.group(1) for m in matches]

    def preceding(self, offset: int) -> Optional[str]:
        """Value with the largest offset strictly below ``offset``."""
        index = bisect.bisect_left(self.offsets, offset)
        if index == 0:
            return None
        return self.values[index - 1]

    def first(self) -> Optional[str]:
        return self.values[0] if self.values else None


def _policy_of(text: str) -> Optional[str]:
    body = text.strip()
    if body.endswith(PERMANENT_FLAG):
        body = body[: -len(PERMANENT_FLAG)].rstrip()
    for policy in POLICIES:
        if body.endswith(policy):
            return policy
    return None


def parse_rich_rule(text: str, *, permanent: Optional[bool] = None) -> list[ParsedFragment]:
    """Parse a rich-rule string into per-port fragments.

    Args:
        text: Rich rule as printed by ``firewall-cmd --list-rich-rules``
        permanent: Override for the permanent flag; by default it is set
            when the text carries ``--permanent``

    Returns:
        One fragment per port for a rule pinned to a family, two (ipv4
        and ipv6) otherwise. Rules that do not end in accept, reject or
        drop yield nothing.
    """
    policy = _policy_of(text)
    if policy is None:
        console.debug(f"Rich rule has no accept/reject/drop action: {escape(text)}")
        return []

    ports = sorted(PORT_DECL.finditer(text), key=lambda m: m.start())
    sources = _OffsetIndex(SOURCE_DECL, text)
    prefixes = _OffsetIndex(LOG_PREFIX_DECL, text)

    family_match = FAMILY_DECL.search(text)
    families = [family_match.group(1)] if family_match else ["ipv4", "ipv6"]

    if permanent is None:
        permanent = PERMANENT_FLAG in text

    fragments: list[ParsedFragment] = []
    for port_match in ports:
        offset = port_match.start()
        source = sources.preceding(offset) or ANY_SOURCE
        # A log clause usually trails the port it describes.
        description = prefixes.preceding(offset) or prefixes.first() or ""
        for family in families:
            fragments.append(ParsedFragment(
                port=port_match.group(1),
                protocol=port_match.group(2),
                source=source,
                policy=policy,
                description=description,
                family=family,
                permanent=permanent,
            ))
    return fragments
