"""Unit tests for the firewalld backend."""

import pytest
from unittest.mock import Mock

from fwagent.core.exceptions import BackendExecutionError, ValidationError, ZoneMissingError
from fwagent.core.executor import CommandResult
from fwagent.services.decompose import OperationType
from fwagent.services.firewalld import FirewalldService, build_rich_rule
from fwagent.services.rules import CanonicalRule, Family


SSH_RULE = (
    'rule family="ipv4" source address="10.0.0.0/8" port port="22" protocol="tcp" '
    'log prefix="SSH Access" level="info" accept'
)
WEB_RULE = 'rule family="ipv4" port port="80" protocol="tcp" log prefix="Web" accept'
MYSQL_DENY = 'rule family="ipv4" source address="192.168.1.5" port port="3306" protocol="tcp" reject'
NO_PROTOCOL = 'rule family="ipv4" port port="9000" accept'


class FakeZones:
    """In-memory ZoneQuery."""

    def __init__(self, zones=None, ports=None, rich=None, permanent_ports=None,
                 permanent_rich=None, port_present=False):
        self.zones = zones or ["public", "internal"]
        self.ports = ports or []
        self.rich = rich or []
        self.permanent_ports = permanent_ports if permanent_ports is not None else list(self.ports)
        self.permanent_rich = permanent_rich if permanent_rich is not None else list(self.rich)
        self.port_present = port_present
        self.queried = []

    def list_zones(self):
        return list(self.zones)

    def list_ports(self, zone, *, permanent=False):
        return list(self.permanent_ports if permanent else self.ports)

    def list_rich_rules(self, zone, *, permanent=False):
        return list(self.permanent_rich if permanent else self.rich)

    def query_port(self, zone, port, protocol, *, permanent=False):
        self.queried.append((zone, port, protocol, permanent))
        return self.port_present


def _ok(return_code=0):
    return CommandResult(command=[], return_code=return_code, stdout="", stderr="")


@pytest.fixture
def mock_ctx():
    ctx = Mock()
    ctx.dry_run = False
    return ctx


@pytest.fixture
def executor():
    executor = Mock()
    executor.run.return_value = _ok()
    return executor


def _commands(executor):
    return [c.args[0] for c in executor.run.call_args_list]


class TestBuildRichRule:
    """Tests for build_rich_rule."""

    def test_without_source(self):
        """An any-source rule has no source clause."""
        rule = CanonicalRule(port="80", protocol="tcp")
        assert build_rich_rule(rule) == 'rule family="ipv4" port port="80" protocol="tcp" accept'

    def test_with_source_and_reject(self):
        """A scoped deny rule carries the source and reject."""
        rule = CanonicalRule(port="3306", protocol="tcp", source="10.0.0.5", policy=False)
        assert build_rich_rule(rule) == (
            'rule family="ipv4" source address="10.0.0.5" port port="3306" protocol="tcp" reject'
        )

    def test_family_override(self):
        """The family argument wins over the rule's family."""
        rule = CanonicalRule(port="80", protocol="tcp")
        assert build_rich_rule(rule, Family.IPV6).startswith('rule family="ipv6"')


class TestFirewalldQuery:
    """Tests for FirewalldService.query."""

    def _service(self, mock_ctx, executor, zones, usage=None):
        return FirewalldService(mock_ctx, executor, zones=zones, usage=usage, agent_id="web-01")

    def test_merges_rich_and_plain(self, mock_ctx, executor):
        """Plain entries fill in families and protocols the rich rules lack."""
        zones = FakeZones(
            rich=[SSH_RULE, WEB_RULE],
            ports=["80/tcp", "8080"],
            permanent_ports=["80/tcp"],
        )
        rules = self._service(mock_ctx, executor, zones).query()

        # 2 rich, ipv6 80/tcp, 8080 tcp/udp x ipv4/ipv6
        assert len(rules) == 7
        ssh = rules[0]
        assert ssh.port == "22"
        assert ssh.source == "10.0.0.0/8"
        assert ssh.descriptor == "SSH Access"
        assert ssh.permanent is True
        assert ssh.agent_id == "web-01"

        plain_8080 = [r for r in rules if r.port == "8080"]
        assert {(r.protocol, r.family) for r in plain_8080} == {
            ("tcp", Family.IPV4), ("tcp", Family.IPV6),
            ("udp", Family.IPV4), ("udp", Family.IPV6),
        }
        assert all(r.permanent is False for r in plain_8080)

    def test_rich_descriptor_survives_dedup(self, mock_ctx, executor):
        """The rich-rule version of a duplicated port keeps its log prefix."""
        usage = Mock()
        usage.processes_using.side_effect = lambda port, proto, fam: ["nginx"] if port == "80" else []
        zones = FakeZones(rich=[WEB_RULE], ports=["80/tcp"])

        rules = self._service(mock_ctx, executor, zones, usage).query()

        ipv4 = [r for r in rules if r.family is Family.IPV4]
        ipv6 = [r for r in rules if r.family is Family.IPV6]
        assert len(ipv4) == 1
        assert ipv4[0].descriptor == "Web"
        assert ipv4[0].in_use is True
        assert ipv6[0].descriptor == "nginx"

    def test_rich_rule_without_protocol_ignored(self, mock_ctx, executor):
        """Rich rules need a protocol while plain entries default to tcp and udp."""
        zones = FakeZones(rich=[NO_PROTOCOL], ports=["9000"])

        rules = self._service(mock_ctx, executor, zones).query()

        assert len(rules) == 4
        assert all(r.source == "0.0.0.0" for r in rules)

    def test_policy_filter(self, mock_ctx, executor):
        """policy=False keeps only denying rules."""
        zones = FakeZones(rich=[SSH_RULE, MYSQL_DENY])

        rules = self._service(mock_ctx, executor, zones).query(policy=False)

        assert [r.port for r in rules] == ["3306"]
        assert rules[0].policy is False

    def test_in_use_filter(self, mock_ctx, executor):
        """in_use filters on the usage probe."""
        usage = Mock()
        usage.processes_using.side_effect = lambda port, proto, fam: ["sshd"] if port == "22" else []
        zones = FakeZones(rich=[SSH_RULE, WEB_RULE])

        service = self._service(mock_ctx, executor, zones, usage)

        assert [r.port for r in service.query(in_use=True)] == ["22"]
        assert [r.port for r in service.query(in_use=False)] == ["80"]

    def test_missing_zone(self, mock_ctx, executor):
        """Querying an unknown zone raises ZoneMissingError."""
        service = self._service(mock_ctx, executor, FakeZones())

        with pytest.raises(ZoneMissingError) as exc:
            service.query("nope")
        assert exc.value.zone == "nope"

    def test_unreadable_port_entry_skipped(self, mock_ctx, executor):
        """Entries that are not port/protocol pairs are skipped."""
        zones = FakeZones(ports=["garbage", "53/udp"])

        rules = self._service(mock_ctx, executor, zones).query()

        assert {r.port for r in rules} == {"53"}


class TestFirewalldApply:
    """Tests for FirewalldService insert/delete."""

    def test_insert_single_rule(self, mock_ctx, executor):
        """Adds a permanent rich rule, then reloads once."""
        service = FirewalldService(mock_ctx, executor, zones=FakeZones())

        result = service.insert([CanonicalRule(port="80", protocol="tcp")])

        assert _commands(executor) == [
            [
                "firewall-cmd",
                "--zone=public",
                '--add-rich-rule=rule family="ipv4" port port="80" protocol="tcp" accept',
                "--permanent",
            ],
            ["firewall-cmd", "--reload"],
        ]
        assert result.count == 1
        assert result.reloaded is True

    def test_compound_rule_single_reload(self, mock_ctx, executor):
        """Four atomic adds are followed by one reload."""
        service = FirewalldService(mock_ctx, executor, zones=FakeZones())

        result = service.insert([CanonicalRule(port="80,443", protocol="tcp/udp")])

        commands = _commands(executor)
        assert result.count == 4
        assert len(commands) == 5
        assert commands[-1] == ["firewall-cmd", "--reload"]

    def test_already_enabled_is_success(self, mock_ctx, executor):
        """Exit code 11 counts as success."""
        executor.run.return_value = _ok(11)
        service = FirewalldService(mock_ctx, executor, zones=FakeZones())

        result = service.insert([CanonicalRule(port="80", protocol="tcp")])
        assert result.count == 1

    def test_failure_stops_batch(self, mock_ctx, executor):
        """The first failing command aborts the batch without reload."""
        executor.run.side_effect = [_ok(), _ok(1)]
        service = FirewalldService(mock_ctx, executor, zones=FakeZones())

        with pytest.raises(BackendExecutionError) as exc:
            service.insert([CanonicalRule(port="80,443", protocol="tcp")])

        assert len(exc.value.applied) == 1
        assert exc.value.applied[0].rule.port == "80"
        assert executor.run.call_count == 2

    def test_insert_twice_is_idempotent(self, mock_ctx, executor):
        """A second identical insert gets exit 11 and still succeeds."""
        executor.run.side_effect = [_ok(), _ok(), _ok(11), _ok()]
        service = FirewalldService(mock_ctx, executor, zones=FakeZones())
        rule = CanonicalRule(port="80", protocol="tcp")

        first = service.insert([rule])
        second = service.insert([rule])

        assert first.count == second.count == 1
        commands = _commands(executor)
        assert commands[0] == commands[2]
        assert commands[3] == ["firewall-cmd", "--reload"]

    def test_runtime_rule_not_reloaded(self, mock_ctx, executor):
        """A runtime rule has no --permanent and needs no reload."""
        service = FirewalldService(mock_ctx, executor, zones=FakeZones())

        result = service.insert([CanonicalRule(port="80", protocol="tcp", permanent=False)])

        commands = _commands(executor)
        assert len(commands) == 1
        assert "--permanent" not in commands[0]
        assert result.reloaded is False

    def test_insert_creates_missing_zone(self, mock_ctx, executor):
        """Inserting into an unknown zone creates it first."""
        service = FirewalldService(mock_ctx, executor, zones=FakeZones())

        service.insert([CanonicalRule(port="80", protocol="tcp", zone="dmz")], zone="dmz")

        commands = _commands(executor)
        assert commands[0] == ["firewall-cmd", "--permanent", "--new-zone=dmz"]
        assert commands[1] == ["firewall-cmd", "--reload"]
        assert commands[2][1] == "--zone=dmz"

    def test_delete_from_missing_zone(self, mock_ctx, executor):
        """Deleting from an unknown zone fails before any command."""
        service = FirewalldService(mock_ctx, executor, zones=FakeZones())

        with pytest.raises(ZoneMissingError):
            service.delete([CanonicalRule(port="80", protocol="tcp")], zone="dmz")
        executor.run.assert_not_called()

    def test_delete_clears_plain_port(self, mock_ctx, executor):
        """An open plain port is removed and the other family re-added."""
        zones = FakeZones(port_present=True)
        service = FirewalldService(mock_ctx, executor, zones=zones)

        result = service.delete([CanonicalRule(port="80", protocol="tcp")])

        commands = _commands(executor)
        assert result.count == 3
        assert commands[0][2].startswith("--remove-rich-rule=")
        assert commands[1] == ["firewall-cmd", "--zone=public", "--remove-port=80/tcp", "--permanent"]
        assert commands[2][2] == (
            '--add-rich-rule=rule family="ipv6" port port="80" protocol="tcp" accept'
        )
        assert result.applied[2].type is OperationType.INSERT
        assert zones.queried == [("public", "80", "tcp", True)]

    def test_delete_reject_rule_keeps_plain_port(self, mock_ctx, executor):
        """Deleting a reject rule leaves the allow-only plain port alone."""
        zones = FakeZones(port_present=True)
        service = FirewalldService(mock_ctx, executor, zones=zones)

        result = service.delete([CanonicalRule(port="80", protocol="tcp", policy=False)])

        assert _commands(executor) == [
            [
                "firewall-cmd",
                "--zone=public",
                '--remove-rich-rule=rule family="ipv4" port port="80" protocol="tcp" reject',
                "--permanent",
            ],
            ["firewall-cmd", "--reload"],
        ]
        assert result.count == 1
        assert zones.queried == []

    def test_delete_without_plain_port(self, mock_ctx, executor):
        """Without a plain port only the rich rule is removed."""
        service = FirewalldService(mock_ctx, executor, zones=FakeZones(port_present=False))

        result = service.delete([CanonicalRule(port="80", protocol="tcp")])
        assert result.count == 1

    def test_delete_scoped_rule_skips_port_check(self, mock_ctx, executor):
        """Rules with a source never touch the plain port list."""
        zones = FakeZones(port_present=True)
        service = FirewalldService(mock_ctx, executor, zones=zones)

        result = service.delete([CanonicalRule(port="22", protocol="tcp", source="10.0.0.0/8")])

        assert result.count == 1
        assert zones.queried == []

    def test_explicit_source_pins_family(self, mock_ctx, executor):
        """BOTH with an IPv4 source only writes the IPv4 rule."""
        service = FirewalldService(mock_ctx, executor, zones=FakeZones())

        result = service.insert([
            CanonicalRule(port="22", protocol="tcp", source="10.0.0.0/8", family=Family.BOTH),
        ])

        assert result.count == 1
        assert _commands(executor)[0][2] == (
            '--add-rich-rule=rule family="ipv4" source address="10.0.0.0/8" '
            'port port="22" protocol="tcp" accept'
        )

    def test_source_family_conflict_rejected(self, mock_ctx, executor):
        """An IPv4 source on an IPv6 rule never reaches firewall-cmd."""
        service = FirewalldService(mock_ctx, executor, zones=FakeZones())

        with pytest.raises(ValidationError):
            service.insert([
                CanonicalRule(port="22", protocol="tcp", source="10.0.0.0/8", family=Family.IPV6),
            ])
        executor.run.assert_not_called()

    def test_validation_before_commands(self, mock_ctx, executor):
        """An invalid rule anywhere in the batch stops it before it starts."""
        service = FirewalldService(mock_ctx, executor, zones=FakeZones())

        with pytest.raises(ValidationError):
            service.insert([
                CanonicalRule(port="80", protocol="tcp"),
                CanonicalRule(port="99999", protocol="tcp"),
            ])
        executor.run.assert_not_called()

    def test_update_is_delete_then_insert(self, mock_ctx, executor):
        """update removes the old rule before adding the new one."""
        service = FirewalldService(mock_ctx, executor, zones=FakeZones())

        result = service.update(
            CanonicalRule(port="80", protocol="tcp"),
            CanonicalRule(port="8080", protocol="tcp"),
        )

        assert [op.type for op in result.applied] == [OperationType.DELETE, OperationType.INSERT]


class TestFirewalldStatus:
    """Tests for FirewalldService status."""

    def test_running(self, mock_ctx):
        """Reports the default zone when running."""
        executor = Mock()
        executor.run.side_effect = [
            CommandResult([], 0, "running\n", ""),
            CommandResult([], 0, "public\n", ""),
        ]
        service = FirewalldService(mock_ctx, executor, zones=FakeZones())

        info = service.status()

        assert info["Active"] is True
        assert info["Default zone"] == "public"

    def test_not_running(self, mock_ctx):
        """A non-zero --state means inactive."""
        executor = Mock()
        executor.run.return_value = CommandResult([], 252, "not running\n", "")
        service = FirewalldService(mock_ctx, executor, zones=FakeZones())

        assert service.is_active() is False
