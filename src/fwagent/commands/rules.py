"""Port rule commands: list, add, remove, convert."""

from pathlib import Path
from typing import Annotated, Optional

import typer

from fwagent.core import (
    AuditEventType,
    AuditResult,
    BackendExecutionError,
    ExecutionContext,
    FWError,
    FirewallError,
    ValidationError,
    configure_audit_logger,
    console,
    create_context,
)
from fwagent.core.audit import AuditLogger
from fwagent.services.backend import PortRuleService, create_service
from fwagent.services.conversion import RuleConverter
from fwagent.services.decompose import ApplyResult, OperationType
from fwagent.services.network import ANY_SOURCE
from fwagent.services.rules import CanonicalRule, Family
from fwagent.services.ufw import UfwService


app = typer.Typer(
    name="rules",
    help="List and change port rules.",
    no_args_is_help=True,
)


DryRunOption = Annotated[
    bool,
    typer.Option("--dry-run", help="Preview changes without executing"),
]
YesOption = Annotated[
    bool,
    typer.Option("--yes", "-y", help="Skip confirmation prompts"),
]
VerboseOption = Annotated[
    int,
    typer.Option("--verbose", "-v", count=True, help="Increase verbosity"),
]
QuietOption = Annotated[
    bool,
    typer.Option("--quiet", "-q", help="Only show errors"),
]
NoColorOption = Annotated[
    bool,
    typer.Option("--no-color", help="Disable colored output"),
]
ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Path to configuration file"),
]
ZoneOption = Annotated[
    Optional[str],
    typer.Option("--zone", "-z", help="firewalld zone (default from config)"),
]
ProtocolOption = Annotated[
    str,
    typer.Option("--protocol", "--proto", "-p", help="tcp, udp or tcp/udp"),
]
SourceOption = Annotated[
    str,
    typer.Option("--source", "-s", help="Source IP/CIDR; 0.0.0.0 means anywhere"),
]
DenyOption = Annotated[
    bool,
    typer.Option("--deny", help="Reject instead of allow"),
]
FamilyOption = Annotated[
    str,
    typer.Option("--family", help="ipv4, ipv6 or both"),
]
RuntimeOption = Annotated[
    bool,
    typer.Option("--runtime", help="firewalld only: skip --permanent"),
]
CommentOption = Annotated[
    str,
    typer.Option("--comment", help="Rule description"),
]


def _handle_error(error: FWError) -> None:
    """Handle an FWError by printing formatted error and exiting."""
    console.error(error.message)

    if error.details:
        for detail in error.details:
            console.print(f"  [dim]{detail}[/dim]")

    applied = getattr(error, "applied", None)
    if applied:
        console.warn(f"{len(applied)} operation(s) were applied before the failure:")
        for op in applied:
            console.print(f"  [dim]{op}[/dim]")

    if error.hint:
        console.hint(error.hint)

    raise typer.Exit(error.exit_code)


def _get_service(
    dry_run: bool = False,
    yes: bool = False,
    verbose: int = 0,
    quiet: bool = False,
    no_color: bool = False,
    config: Optional[Path] = None,
    convert_on_start: bool = True,
) -> tuple[ExecutionContext, PortRuleService, AuditLogger]:
    """Create context, backend service and audit logger."""
    ctx = create_context(
        dry_run=dry_run,
        yes=yes,
        verbose=verbose,
        quiet=quiet,
        no_color=no_color,
        config=config,
    )
    try:
        audit_config = ctx.config.audit
        audit = configure_audit_logger(audit_config.path, enabled=audit_config.enabled)
        service = create_service(ctx, convert_on_start=convert_on_start)
    except FWError as e:
        _handle_error(e)
    return ctx, service, audit


def _parse_policy(policy: Optional[str]) -> Optional[bool]:
    if policy is None:
        return None
    value = policy.lower()
    if value in ("allow", "accept"):
        return True
    if value in ("deny", "reject", "drop"):
        return False
    raise ValidationError(f"Invalid policy: {policy}", hint="Use allow or deny")


def _build_rule(
    service: PortRuleService,
    port: str,
    protocol: str,
    source: str,
    deny: bool,
    family: str,
    runtime: bool,
    comment: str,
    zone: Optional[str],
) -> CanonicalRule:
    agent_id = getattr(service, "agent_id", "")
    return CanonicalRule(
        port=port,
        protocol=protocol.lower(),
        family=Family.parse(family),
        source=source,
        policy=not deny,
        zone=zone or service.zone,
        permanent=not runtime,
        agent_id=agent_id,
        descriptor=comment,
    )


def _report(ctx: ExecutionContext, verb: str, rule: CanonicalRule, result: ApplyResult) -> None:
    if ctx.dry_run:
        ctx.console.dry_run_msg(f"Would run {result.count} command(s) to {verb} {rule}")
        return
    ctx.console.success(f"{verb.capitalize()}: {rule} ({result.count} command(s))")
    if result.reloaded:
        ctx.console.verbose("Firewall reloaded")


def _mutate(
    operation: OperationType,
    port: str,
    protocol: str,
    source: str,
    deny: bool,
    family: str,
    runtime: bool,
    comment: str,
    zone: Optional[str],
    dry_run: bool,
    yes: bool,
    verbose: int,
    quiet: bool,
    no_color: bool,
    config: Optional[Path],
) -> None:
    ctx, service, audit = _get_service(dry_run, yes, verbose, quiet, no_color, config)
    event = (
        AuditEventType.FIREWALL_RULE_ADD
        if operation is OperationType.INSERT
        else AuditEventType.FIREWALL_RULE_REMOVE
    )
    verb = "add" if operation is OperationType.INSERT else "remove"

    target = f"{port}/{protocol}"
    with audit.correlation(f"rules-{verb}"):
        try:
            rule = _build_rule(service, port, protocol, source, deny, family, runtime, comment, zone)
            if operation is OperationType.DELETE and not ctx.dry_run:
                if not ctx.console.confirm(f"Remove {rule}?", skip_confirm=ctx.yes):
                    ctx.console.info("Aborted")
                    raise typer.Exit(0)
            result = service.apply([rule], operation, rule.zone)
        except BackendExecutionError as e:
            if e.applied:
                audit.log_operation(
                    event,
                    AuditResult.PARTIAL,
                    "port",
                    target,
                    verb,
                    parameters={"applied": [str(op) for op in e.applied]},
                    error=str(e),
                )
            else:
                audit.log_failure(event, "port", target, error=str(e))
            _handle_error(e)
        except FWError as e:
            audit.log_failure(event, "port", target, error=str(e))
            _handle_error(e)

        _report(ctx, verb, rule, result)
        if ctx.dry_run:
            audit.log_dry_run(event, "port", target, message=str(rule))
        else:
            audit.log_success(
                event,
                "port",
                target,
                message=f"{verb} {rule}: {result.count} command(s)",
            )


@app.command("list")
def list_rules(
    zone: ZoneOption = None,
    policy: Annotated[
        Optional[str],
        typer.Option("--policy", help="Only allow or deny rules"),
    ] = None,
    in_use: Annotated[
        Optional[bool],
        typer.Option("--in-use/--not-in-use", help="Only ports a process does / does not listen on"),
    ] = None,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """List port rules in canonical form.

    [bold]Examples:[/bold]

        fwagent rules list

        fwagent rules list --zone internal --policy deny
    """
    ctx, service, _ = _get_service(
        verbose=verbose, quiet=quiet, no_color=no_color, config=config, convert_on_start=False,
    )

    try:
        rules = service.query(zone, in_use=in_use, policy=_parse_policy(policy))
    except FWError as e:
        _handle_error(e)

    if not rules:
        ctx.console.info("No port rules")
        return

    rows = [
        [
            r.port,
            r.protocol,
            r.family.value,
            "anywhere" if r.source == ANY_SOURCE else r.source,
            "[green]allow[/green]" if r.policy else "[red]deny[/red]",
            "permanent" if r.permanent else "runtime",
            "yes" if r.in_use else "",
            r.descriptor,
        ]
        for r in rules
    ]
    ctx.console.table(
        f"Port rules ({service.name}, zone {zone or service.zone})",
        ["Port", "Proto", "Family", "Source", "Policy", "Scope", "In use", "Description"],
        rows,
    )


@app.command("add")
def add(
    port: Annotated[str, typer.Argument(help="Port, range or list: 80, 6000-6007, 80,443")],
    protocol: ProtocolOption = "tcp",
    source: SourceOption = ANY_SOURCE,
    deny: DenyOption = False,
    family: FamilyOption = "ipv4",
    runtime: RuntimeOption = False,
    comment: CommentOption = "",
    zone: ZoneOption = None,
    dry_run: DryRunOption = False,
    yes: YesOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Add a port rule.

    Lists of ports and protocols are applied as one batch that stops at
    the first failure.

    [bold]Examples:[/bold]

        sudo fwagent rules add 8080

        sudo fwagent rules add 80,443 --protocol tcp/udp --family both

        sudo fwagent rules add 5432 --source 10.0.0.0/8 --comment "Postgres"
    """
    _mutate(
        OperationType.INSERT, port, protocol, source, deny, family, runtime, comment, zone,
        dry_run, yes, verbose, quiet, no_color, config,
    )


@app.command("remove")
def remove(
    port: Annotated[str, typer.Argument(help="Port, range or list: 80, 6000-6007, 80,443")],
    protocol: ProtocolOption = "tcp",
    source: SourceOption = ANY_SOURCE,
    deny: DenyOption = False,
    family: FamilyOption = "ipv4",
    runtime: RuntimeOption = False,
    comment: CommentOption = "",
    zone: ZoneOption = None,
    dry_run: DryRunOption = False,
    yes: YesOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Remove a port rule.

    The rule must match the existing one: same source, policy and family.

    [bold]Examples:[/bold]

        sudo fwagent rules remove 8080

        sudo fwagent rules remove 3306 --deny --source 10.0.0.5
    """
    _mutate(
        OperationType.DELETE, port, protocol, source, deny, family, runtime, comment, zone,
        dry_run, yes, verbose, quiet, no_color, config,
    )


@app.command("convert")
def convert(
    max_iterations: Annotated[
        Optional[int],
        typer.Option("--max-iterations", min=1, max=100, help="Bound on IPv6 prune passes"),
    ] = None,
    dry_run: DryRunOption = False,
    yes: YesOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Rewrite generic ufw port rules as tcp and udp rules (ufw only).

    A rule like "80 ALLOW IN Anywhere" becomes "80/tcp" and "80/udp"
    rules, and its leftover "80 (v6)" twin is deleted.

    [bold]Examples:[/bold]

        sudo fwagent rules convert --dry-run

        sudo fwagent rules convert -y
    """
    ctx, service, audit = _get_service(
        dry_run, yes, verbose, quiet, no_color, config, convert_on_start=False
    )

    if not isinstance(service, UfwService):
        _handle_error(FirewallError(
            f"Conversion only applies to ufw, not {service.name}",
            hint="Set backend.type to ufw or FWAGENT_BACKEND=ufw",
        ))

    if not dry_run and not ctx.console.confirm(
        "Delete and re-add generic ufw rules?", skip_confirm=yes
    ):
        ctx.console.info("Aborted")
        raise typer.Exit(0)

    converter = RuleConverter(
        ctx,
        service,
        max_iterations=max_iterations or ctx.config.conversion.max_iterations,
    )

    with audit.correlation("rules-convert"):
        try:
            report = converter.run()
        except FWError as e:
            audit.log_failure(AuditEventType.FIREWALL_CONVERT, "ufw", "rules", error=str(e))
            _handle_error(e)

        ctx.console.operation_summary(
            "Rule conversion",
            report.failed_deletions == 0 and report.failed_additions == 0,
            report.summary(),
        )
        message = f"Converted {report.converted}, pruned {report.pruned}"
        if ctx.dry_run:
            audit.log_dry_run(AuditEventType.FIREWALL_CONVERT, "ufw", "rules", message=message)
        elif report.changed:
            audit.log_success(AuditEventType.FIREWALL_CONVERT, "ufw", "rules", message=message)
