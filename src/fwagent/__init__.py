"""
fwagent - Host firewall control agent.

Presents one port-rule model over firewalld and ufw, with parsers for
their native listings and a converter that normalizes generic ufw rules.
"""

__version__ = "1.0.0"
