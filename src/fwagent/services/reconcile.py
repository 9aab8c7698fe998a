"""Deduplication of rules collected from several native listings.

firewalld reports the same port twice when it is both in the plain port
list and in a rich rule. The rich rule carries the real source, policy
and description, while the plain listing only knows defaults. Rich-rule
rules are therefore inserted first. Later inserts with the same identity
are no-ops, so the rich-rule version always survives.
"""

from typing import Iterable

from fwagent.services.rules import CanonicalRule


PLAIN_PROTOCOLS = ("tcp", "udp")


def merge_ordered(
    rich_rules: Iterable[CanonicalRule],
    plain_rules: Iterable[CanonicalRule],
) -> list[CanonicalRule]:
    """Merge two rule streams, keeping the first rule seen per identity.

    Returns:
        Deduplicated rules in first-seen order
    """
    seen: dict[CanonicalRule, CanonicalRule] = {}
    for rule in rich_rules:
        seen.setdefault(rule, rule)
    for rule in plain_rules:
        seen.setdefault(rule, rule)
    return list(seen.values())


def merge(
    rich_rules: Iterable[CanonicalRule],
    plain_rules: Iterable[CanonicalRule],
) -> set[CanonicalRule]:
    """Set form of :func:`merge_ordered`."""
    return set(merge_ordered(rich_rules, plain_rules))


def expand_protocols(rule: CanonicalRule) -> list[CanonicalRule]:
    """Give a plain-listing rule without a concrete protocol one rule per protocol.

    Rules with an empty protocol or a ``tcp/udp`` list become one tcp and
    one udp rule. Rules with a single protocol are returned unchanged.
    """
    protocol = rule.protocol.strip().lower()
    if protocol in PLAIN_PROTOCOLS:
        return [rule]
    if not protocol:
        protocols = list(PLAIN_PROTOCOLS)
    else:
        protocols = [p for p in protocol.split("/") if p]
    return [rule.with_changes(protocol=p) for p in protocols]
