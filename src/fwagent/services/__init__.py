"""Firewall backends and the rule model they share."""

from fwagent.services.rules import CanonicalRule, Family, RuleKind
from fwagent.services.firewalld import FirewalldService
from fwagent.services.ufw import UfwService
from fwagent.services.conversion import RuleConverter

__all__ = [
    "CanonicalRule",
    "Family",
    "RuleKind",
    "FirewalldService",
    "UfwService",
    "RuleConverter",
]
