"""Backend detection and service construction.

A host runs either firewalld or ufw. ``detect_providers`` looks at both;
``create_service`` returns the port rule service for the configured (or
detected) one.
"""

import shutil
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

from fwagent.core.config import AppConfig
from fwagent.core.context import ExecutionContext
from fwagent.core.exceptions import ExecutionError, PrerequisiteError
from fwagent.core.executor import CommandExecutor
from fwagent.services.conversion import RuleConverter
from fwagent.services.decompose import ApplyResult, OperationType
from fwagent.services.firewalld import FIREWALL_CMD, FirewalldService
from fwagent.services.port_usage import SsPortUsageProbe
from fwagent.services.rules import CanonicalRule
from fwagent.services.ufw import UFW, UfwService


class PortRuleService(Protocol):
    """Operations both backends provide."""

    name: str
    zone: str

    def is_active(self) -> bool:
        ...

    def status(self) -> dict[str, object]:
        ...

    def query(
        self,
        zone: Optional[str] = None,
        *,
        in_use: Optional[bool] = None,
        policy: Optional[bool] = None,
    ) -> list[CanonicalRule]:
        ...

    def insert(self, rules: Iterable[CanonicalRule], zone: Optional[str] = None) -> ApplyResult:
        ...

    def delete(self, rules: Iterable[CanonicalRule], zone: Optional[str] = None) -> ApplyResult:
        ...

    def update(self, old: CanonicalRule, new: CanonicalRule, zone: Optional[str] = None) -> ApplyResult:
        ...

    def apply(
        self,
        rules: Iterable[CanonicalRule],
        operation: OperationType,
        zone: Optional[str] = None,
    ) -> ApplyResult:
        ...


@dataclass
class ProviderStatus:
    """Which firewall front-ends are installed and running."""
    firewalld_installed: bool = False
    firewalld_running: bool = False
    ufw_installed: bool = False


def detect_providers(executor: CommandExecutor, timeout: int = 10) -> ProviderStatus:
    """Probe the host for firewalld and ufw."""
    status = ProviderStatus()

    status.firewalld_installed = shutil.which(FIREWALL_CMD) is not None
    if status.firewalld_installed:
        try:
            result = executor.run(
                [FIREWALL_CMD, "--state"],
                check=False,
                read_only=True,
                timeout=timeout,
            )
            status.firewalld_running = result.success and result.stdout.strip() == "running"
        except ExecutionError as e:
            executor.ctx.console.debug(f"firewalld state unknown: {e}")

    status.ufw_installed = shutil.which(UFW) is not None
    return status


def detect_backend(executor: CommandExecutor, timeout: int = 10) -> str:
    """Pick the backend to use: a running firewalld wins over ufw.

    Raises:
        PrerequisiteError: If neither backend is usable
    """
    status = detect_providers(executor, timeout)
    if status.firewalld_running:
        return "firewalld"
    if status.ufw_installed:
        return "ufw"
    if status.firewalld_installed:
        raise PrerequisiteError(
            "firewalld is installed but not running",
            hint="Start it with: systemctl start firewalld",
        )
    raise PrerequisiteError(
        "No supported firewall found",
        hint="Install firewalld or ufw",
    )


def create_service(
    ctx: ExecutionContext,
    executor: Optional[CommandExecutor] = None,
    app_config: Optional[AppConfig] = None,
    *,
    convert_on_start: bool = True,
) -> PortRuleService:
    """Build the port rule service for this host.

    With ``conversion.run_on_start`` set, a ufw host gets its generic
    rules converted once, before the service is handed out.

    Args:
        ctx: Execution context
        executor: Command executor (built from the config if omitted)
        app_config: Configuration (defaults to ``ctx.config``)
        convert_on_start: Honour ``conversion.run_on_start``

    Raises:
        ConfigurationError: If the configured backend is invalid
        PrerequisiteError: If auto-detection finds no backend
    """
    app_config = app_config or ctx.config
    if executor is None:
        executor = CommandExecutor(ctx, use_sudo=app_config.config.backend.use_sudo)

    timeouts = app_config.timeouts
    backend = app_config.backend_type
    if backend == "auto":
        backend = detect_backend(executor, timeouts.status)
        ctx.console.verbose(f"Detected firewall backend: {backend}")

    usage = SsPortUsageProbe(executor, timeouts.status)
    if backend == "firewalld":
        return FirewalldService(
            ctx,
            executor,
            zone=app_config.zone,
            agent_id=app_config.agent_id,
            usage=usage,
            timeouts=timeouts,
        )

    service = UfwService(
        ctx,
        executor,
        agent_id=app_config.agent_id,
        usage=usage,
        timeouts=timeouts,
    )
    if convert_on_start and app_config.conversion.run_on_start:
        report = RuleConverter(
            ctx,
            service,
            max_iterations=app_config.conversion.max_iterations,
        ).run()
        if report.changed:
            ctx.console.info(
                f"Converted {report.converted} generic ufw rule(s), "
                f"pruned {report.pruned} IPv6 duplicate(s)"
            )
    return service
