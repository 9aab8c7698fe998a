"""Core framework components for the firewall agent."""

from fwagent.core.exceptions import (
    FWError,
    ConfigurationError,
    ValidationError,
    ExecutionError,
    PrerequisiteError,
    FirewallError,
    BackendExecutionError,
    ZoneMissingError,
)

from fwagent.core.context import ExecutionContext, create_context
from fwagent.core.output import console, Console, Verbosity
from fwagent.core.config import AppConfig, MachineConfig
from fwagent.core.audit import (
    AuditLogger,
    AuditEvent,
    AuditEventType,
    AuditResult,
    configure_audit_logger,
    get_audit_logger,
)
from fwagent.core.executor import CommandExecutor, CommandResult

__all__ = [
    # Exceptions
    "FWError",
    "ConfigurationError",
    "ValidationError",
    "ExecutionError",
    "PrerequisiteError",
    "FirewallError",
    "BackendExecutionError",
    "ZoneMissingError",
    # Context
    "ExecutionContext",
    "create_context",
    # Output
    "console",
    "Console",
    "Verbosity",
    # Config
    "AppConfig",
    "MachineConfig",
    # Audit
    "AuditLogger",
    "AuditEvent",
    "AuditEventType",
    "AuditResult",
    "configure_audit_logger",
    "get_audit_logger",
    # Executor
    "CommandExecutor",
    "CommandResult",
]
