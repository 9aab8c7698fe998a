"""Address and port helpers shared by the rule parsers and backends.

Provides:
- IP family detection for addresses and CIDRs
- Port, protocol and source validation for rule specs
"""

import ipaddress
import re

from fwagent.core.exceptions import ValidationError


# Sentinel source meaning "any address"
ANY_SOURCE = "0.0.0.0"

MIN_PORT = 1
MAX_PORT = 65535

VALID_PROTOCOLS = ("tcp", "udp")

_PORT_TOKEN = re.compile(r"^(\d{1,5})(?:[-:](\d{1,5}))?$")


def strip_cidr(address: str) -> str:
    """Drop a trailing /prefix from an address."""
    return address.split("/", 1)[0].strip()


def is_ipv6(address: str) -> bool:
    """Check if a string is an IPv6 address (prefix ignored).

    Args:
        address: Address or CIDR string

    Returns:
        True if the address part parses as IPv6
    """
    try:
        ipaddress.IPv6Address(strip_cidr(address))
        return True
    except ValueError:
        return False


def is_any_source(source: str) -> bool:
    """True for the sentinels that mean "from anywhere"."""
    return source.strip().lower() in ("", ANY_SOURCE, "0.0.0.0/0", "::/0", "any", "anywhere")


def validate_cidr(cidr: str) -> bool:
    """Validate a CIDR notation string or bare IP address."""
    try:
        ipaddress.ip_network(cidr, strict=False)
        return True
    except ValueError:
        return False


def validate_source(source: str) -> None:
    """Validate source IP/CIDR.

    Raises:
        ValidationError: If source is invalid
    """
    if not source:
        raise ValidationError("Source address is required", hint="Use 0.0.0.0 for any source")
    if source != ANY_SOURCE and not validate_cidr(source):
        raise ValidationError(
            f"Invalid source IP/CIDR: {source}",
            hint="Use format like '10.0.0.0/8' or '192.168.1.1'",
        )


def validate_port_token(token: str) -> None:
    """Validate one port or port range (``80``, ``1000-2000``, ``1000:2000``).

    Raises:
        ValidationError: If the token is not a port or an ascending range
    """
    match = _PORT_TOKEN.match(token.strip())
    if not match:
        raise ValidationError(
            f"Invalid port: {token}",
            hint="Use a port (80), a range (1000-2000) or a comma list (80,443)",
        )
    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else start
    for value in (start, end):
        if not MIN_PORT <= value <= MAX_PORT:
            raise ValidationError(
                f"Invalid port: {value}",
                hint=f"Port must be between {MIN_PORT} and {MAX_PORT}",
            )
    if end < start:
        raise ValidationError(f"Invalid port range: {token}", hint="Range start must not exceed end")


def validate_port_spec(port: str) -> None:
    """Validate a comma-separated list of ports and ranges."""
    if not port or not port.strip():
        raise ValidationError("Port is required")
    for token in port.split(","):
        validate_port_token(token)


def validate_protocol_spec(protocol: str) -> None:
    """Validate a slash-separated protocol list such as ``tcp/udp``."""
    if not protocol or not protocol.strip():
        raise ValidationError("Protocol is required", hint="Use tcp, udp or tcp/udp")
    for token in protocol.split("/"):
        if token.strip().lower() not in VALID_PROTOCOLS:
            raise ValidationError(
                f"Invalid protocol: {token}",
                hint=f"Valid protocols: {', '.join(VALID_PROTOCOLS)}",
            )
