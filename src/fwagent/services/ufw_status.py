"""Parsers for ``ufw status numbered`` and ``ufw status verbose`` output.

ufw prints rules as whitespace-aligned columns meant for humans:

    [ 1] 22/tcp                     ALLOW IN    Anywhere
    [ 9] 8080 (v6)                  ALLOW IN    Anywhere (v6)      # Web App

Column widths vary, the direction may be fused into the action, and
IPv6 rules carry ``(v6)`` markers. The line parser tolerates all of that
and never raises: lines it cannot read are skipped and logged.
"""

import re
from dataclasses import dataclass, field
from typing import Optional

from rich.markup import escape

from fwagent.core.output import console
from fwagent.services.network import is_ipv6, strip_cidr


NUMBERED_RULE = re.compile(r"^\[\s*(\d+)\]\s*(.*)")
# To  Action [Direction]  From
FOUR_COLUMN_RULE = re.compile(r"^(\S+)\s{2,}(\S+)(?:\s+(\S+))?\s{2,}(\S+)\s*$")
# To  ActionDirection  From
THREE_COLUMN_RULE = re.compile(r"^(\S+)\s{2,}(\S+)\s{2,}(\S+)\s*$")
# Port, port range or port/proto; used to keep ports from looking like addresses
NUMERIC_PORT = re.compile(r"^\d+(:\d+)?(/\w+)?$")
SERVICE_NAME = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]*$")
# (in)/(out) suffixes; Bengali-localized ufw prints "(ইন)"
TRAILING_DIRECTION = re.compile(r"\s*\((out|in|ইন| ইন)\)\s*$")
DISABLED_MARKER = re.compile(r"\[disabled\]", re.IGNORECASE)
MULTI_SPACE = re.compile(r"\s{2,}")
SEPARATOR_LINE = re.compile(r"^-[-\s]*$")
HEADER_LINE = re.compile(r"^To\s+Action\s+From\b")

RULE_ROW = re.compile(r"^\[\s*\d+\s*\]\s+.*|^\d+\s+.*")
LOGGING_LINE = re.compile(
    r"Logging:\s+(?:on|off)?\s*\(([^)]+)\)|Logging:\s+([^\s(]+)(?:\s*\((on|off)\))?"
)
DEFAULT_LINE = re.compile(
    r"Default:\s*(\w+)\s*\(incoming\),\s*(\w+)\s*\(outgoing\),\s*(\w+)\s*\(routed\)"
)

SKIPPED_PREFIXES = ("status:", "logging:", "default:", "new profiles:")
DEFAULT_IN_ACTIONS = ("LIMIT", "ALLOW", "DENY", "REJECT")
SPECIAL_ADDRESSES = ("anywhere", "any")


@dataclass
class StatusLine:
    """One rule row from ``ufw status numbered``.

    ``raw_to``/``raw_from`` keep the columns as printed; ``to``/``from_``
    have ``(v6)`` markers removed.
    """
    rule_number: int = -1
    to: str = ""
    raw_to: str = ""
    action: str = ""
    direction: Optional[str] = None
    from_: str = ""
    raw_from: str = ""
    comment: Optional[str] = None
    is_ipv6: bool = False
    enabled: bool = True
    is_protocol_specific: bool = False

    @property
    def equivalence_key(self) -> tuple[str, str, str]:
        """Key shared by the IPv4 and IPv6 rows of one logical rule."""
        return (self.to, self.action, self.from_)

    def __str__(self) -> str:
        number = f"[{self.rule_number}] " if self.rule_number >= 0 else ""
        family = " (v6)" if self.is_ipv6 else ""
        line = f"{number}{self.to}{family} {self.action} {self.direction or ''} {self.from_}"
        if self.comment:
            line += f" # {self.comment}"
        return " ".join(line.split())


def _is_special_address(value: str) -> bool:
    return value.lower() in SPECIAL_ADDRESSES


def _looks_protocol_specific(to: str) -> bool:
    """True for ``80/tcp`` style targets and for service names like ``OpenSSH``."""
    if "/" in to:
        return True
    return (
        bool(SERVICE_NAME.match(to))
        and not NUMERIC_PORT.match(to)
        and not _is_special_address(to)
    )


def _split_comment(text: str) -> tuple[str, Optional[str]]:
    """Split off a ``#`` comment that is not inside quotes."""
    in_quotes = False
    for index, char in enumerate(text):
        if char in ('"', "'"):
            in_quotes = not in_quotes
        elif char == "#" and not in_quotes:
            return text[:index].strip(), text[index + 1:].strip()
    return text, None


def _split_action_direction(candidate: str) -> tuple[str, Optional[str]]:
    """Split a fused column such as ``ALLOWIN`` or ``DENYOUT``."""
    candidate = candidate.strip()
    if (
        candidate.endswith("IN")
        and len(candidate) > 2
        and (candidate[0].isupper() or candidate.startswith("LIMIT"))
    ):
        return candidate[:-2].strip(), "IN"
    if candidate.endswith("OUT") and len(candidate) > 3 and candidate[0].isupper():
        return candidate[:-3].strip(), "OUT"
    if candidate.upper() == "LIMIT":
        return candidate, "IN"
    return candidate, None


def _split_columns(text: str) -> Optional[tuple[str, str, Optional[str], str]]:
    """Return (to, action, direction, from) or None."""
    match = FOUR_COLUMN_RULE.match(text)
    if match:
        raw_to, action, direction, raw_from = match.groups()
        if direction and direction.strip():
            return raw_to, action, direction.strip(), raw_from
        action, direction = _split_action_direction(action)
        return raw_to, action, direction, raw_from

    match = THREE_COLUMN_RULE.match(text)
    if match:
        raw_to, fused, raw_from = match.groups()
        action, direction = _split_action_direction(fused)
        return raw_to, action, direction, raw_from

    columns = MULTI_SPACE.split(text.strip())
    if len(columns) >= 4:
        return columns[0], columns[1], columns[2], columns[3]
    if len(columns) == 3:
        action, direction = _split_action_direction(columns[1])
        return columns[0], action, direction, columns[2]
    return None


def is_skippable(line: str) -> bool:
    """True for blank, separator, header and summary lines."""
    stripped = _split_comment(line.strip())[0]
    if not stripped or SEPARATOR_LINE.match(stripped) or HEADER_LINE.match(stripped):
        return True
    return stripped.lower().startswith(SKIPPED_PREFIXES)


def parse_status_line(line: str, *, require_number: bool = False) -> Optional[StatusLine]:
    """Parse one line of ``ufw status numbered`` output.

    Args:
        line: Raw output line
        require_number: Reject rows without a ``[ N]`` prefix

    Returns:
        StatusLine, or None if the line is not a readable rule row
    """
    if is_skippable(line):
        return None

    rule = StatusLine()
    text = line.strip()

    numbered = NUMBERED_RULE.match(text)
    if numbered:
        rule.rule_number = int(numbered.group(1))
        text = numbered.group(2).strip()
    elif require_number:
        console.debug(f"Skipping unnumbered ufw line: {escape(line.strip())}")
        return None

    if DISABLED_MARKER.search(text):
        rule.enabled = False
        text = DISABLED_MARKER.sub("", text).strip()

    rule_part, rule.comment = _split_comment(text)

    had_v6_marker = "(v6)" in rule_part
    rule_part = TRAILING_DIRECTION.sub("", rule_part).strip()
    cleaned = rule_part.replace("(v6)", "").strip()

    columns = _split_columns(cleaned)
    if columns is None:
        console.warn(f"Cannot parse ufw rule line: {escape(line.strip())}")
        return None
    rule.raw_to, action, direction, rule.raw_from = (
        columns[0].strip(), columns[1].strip(), columns[2], columns[3].strip()
    )

    rule.to = rule.raw_to.replace("(v6)", "").strip()
    rule.from_ = rule.raw_from.replace("(v6)", "").strip()
    rule.is_protocol_specific = _looks_protocol_specific(rule.raw_to)

    if action.upper() == "LIMIT" and rule.to.upper().startswith("LIMIT "):
        rule.to = rule.to[len("LIMIT "):].strip()
        rule.is_protocol_specific = _looks_protocol_specific(rule.to)

    rule.action = action.upper()
    if direction:
        rule.direction = direction.upper()
    elif rule.action in DEFAULT_IN_ACTIONS:
        rule.direction = "IN"

    rule.is_ipv6 = had_v6_marker
    if (
        not rule.is_ipv6
        and rule.from_
        and not _is_special_address(rule.from_)
        and is_ipv6(rule.from_)
    ):
        rule.is_ipv6 = True
    if (
        not rule.is_ipv6
        and rule.to
        and not _is_special_address(rule.to)
        and not NUMERIC_PORT.match(strip_cidr(rule.to))
        and is_ipv6(rule.to)
    ):
        rule.is_ipv6 = True

    if not rule.action:
        console.warn(f"ufw rule line has no action: {escape(line.strip())}")
        return None
    if not rule.from_:
        rule.from_ = "Anywhere"
    if not rule.to:
        rule.to = "Anywhere"

    return rule


def parse_numbered_rules(output: str, *, require_number: bool = True) -> list[StatusLine]:
    """Parse every rule row of ``ufw status numbered``, sorted by number."""
    rules = []
    for line in output.splitlines():
        rule = parse_status_line(line, require_number=require_number)
        if rule is not None:
            rules.append(rule)
    rules.sort(key=lambda r: r.rule_number)
    return rules


@dataclass
class UfwStatus:
    """Firewall state as reported by ufw."""
    active: bool = False
    logging_level: Optional[str] = None
    default_incoming: Optional[str] = None
    default_outgoing: Optional[str] = None
    default_routed: Optional[str] = None
    new_profiles: Optional[str] = None
    rules: list[StatusLine] = field(default_factory=list)

    @classmethod
    def parse(cls, verbose_output: str, numbered_output: str) -> "UfwStatus":
        """Combine ``ufw status verbose`` and ``ufw status numbered`` output.

        Rule rows are only read after the ``To Action From`` header.
        """
        status = cls()

        for line in verbose_output.splitlines():
            stripped = line.strip()
            if stripped.startswith("Status:"):
                status.active = stripped[len("Status:"):].strip().lower() == "active"
            elif stripped.startswith("Logging:"):
                match = LOGGING_LINE.search(stripped)
                if match:
                    status.logging_level = (match.group(1) or match.group(2)).strip()
            elif stripped.startswith("Default:"):
                match = DEFAULT_LINE.search(stripped)
                if match:
                    (
                        status.default_incoming,
                        status.default_outgoing,
                        status.default_routed,
                    ) = match.groups()
            elif stripped.startswith("New profiles:"):
                status.new_profiles = stripped[len("New profiles:"):].strip()

        in_rules = False
        for line in numbered_output.splitlines():
            stripped = line.strip()
            if not stripped:
                continue
            if HEADER_LINE.match(stripped):
                in_rules = True
                continue
            if not in_rules or stripped.startswith("-"):
                continue
            if RULE_ROW.match(stripped):
                rule = parse_status_line(stripped)
                if rule is not None:
                    status.rules.append(rule)

        return status
