"""Unit tests for generic ufw rule conversion."""

import pytest
from unittest.mock import Mock

from fwagent.core.executor import CommandResult
from fwagent.services.conversion import (
    ConversionReport,
    RuleConverter,
    is_conversion_candidate,
    replacement_commands,
)
from fwagent.services.ufw import UfwService
from fwagent.services.ufw_status import parse_status_line


HEADER = """\
Status: active

     To                         Action      From
     --                         ------      ----
"""

BEFORE = HEADER + """\
[ 1] 22/tcp                     ALLOW IN    Anywhere
[ 2] 443/tcp                    ALLOW IN    Anywhere
[ 3] 5432/tcp                   ALLOW IN    10.0.0.0/8
[ 4] 53/udp                     ALLOW IN    Anywhere
[ 5] 80                         ALLOW IN    Anywhere
[ 6] 22/tcp (v6)                ALLOW IN    Anywhere (v6)
[ 7] 80 (v6)                    ALLOW IN    Anywhere (v6)
"""

AFTER_DECOMPOSE = HEADER + """\
[ 1] 22/tcp                     ALLOW IN    Anywhere
[ 2] 443/tcp                    ALLOW IN    Anywhere
[ 3] 5432/tcp                   ALLOW IN    10.0.0.0/8
[ 4] 53/udp                     ALLOW IN    Anywhere
[ 5] 80/tcp                     ALLOW IN    Anywhere
[ 6] 80/udp                     ALLOW IN    Anywhere
[ 7] 22/tcp (v6)                ALLOW IN    Anywhere (v6)
[ 8] 80 (v6)                    ALLOW IN    Anywhere (v6)
[ 9] 80/tcp (v6)                ALLOW IN    Anywhere (v6)
[10] 80/udp (v6)                ALLOW IN    Anywhere (v6)
"""

AFTER_PRUNE = HEADER + """\
[ 1] 22/tcp                     ALLOW IN    Anywhere
[ 2] 443/tcp                    ALLOW IN    Anywhere
[ 3] 5432/tcp                   ALLOW IN    10.0.0.0/8
[ 4] 53/udp                     ALLOW IN    Anywhere
[ 5] 80/tcp                     ALLOW IN    Anywhere
[ 6] 80/udp                     ALLOW IN    Anywhere
[ 7] 22/tcp (v6)                ALLOW IN    Anywhere (v6)
[ 8] 80/tcp (v6)                ALLOW IN    Anywhere (v6)
[ 9] 80/udp (v6)                ALLOW IN    Anywhere (v6)
"""


def fake_executor(listings, fails=None):
    """Mock executor returning successive numbered listings.

    The last listing repeats once the others are used up.
    """
    remaining = list(listings)

    def run(command, **kwargs):
        if command[1:3] == ["status", "numbered"]:
            text = remaining.pop(0) if len(remaining) > 1 else remaining[0]
            return CommandResult(command, 0, text, "")
        if fails is not None and fails(command):
            return CommandResult(command, 1, "", "ERROR: Could not delete non-existent rule")
        return CommandResult(command, 0, "", "")

    executor = Mock()
    executor.run.side_effect = run
    return executor


def mutations(executor):
    return [
        c.args[0] for c in executor.run.call_args_list
        if c.args[0][1] != "status"
    ]


@pytest.fixture
def mock_ctx():
    ctx = Mock()
    ctx.dry_run = False
    return ctx


def _converter(ctx, executor, **kwargs):
    return RuleConverter(ctx, UfwService(ctx, executor), **kwargs)


class TestIsConversionCandidate:
    """Tests for is_conversion_candidate."""

    @pytest.mark.parametrize("line,expected", [
        ("[ 5] 80                         ALLOW IN    Anywhere", True),
        ("[ 7] 80 (v6)                    ALLOW IN    Anywhere (v6)", True),
        ("[ 8] 6000:6007                  DENY IN     Anywhere", True),
        ("[ 9] 3000                       REJECT IN   10.0.0.0/8", True),
        ("[ 1] 22/tcp                     ALLOW IN    Anywhere", False),
        ("[ 4] OpenSSH                    ALLOW IN    Anywhere", False),
        ("[ 6] 53                         ALLOW OUT   Anywhere (out)", False),
        ("[ 2] 2222                       LIMIT IN    Anywhere", False),
        ("[ 3] 8080                       ALLOW IN    Anywhere   [disabled]", False),
    ])
    def test_candidates(self, line, expected):
        """Only enabled, inbound, generic numeric rules qualify."""
        assert is_conversion_candidate(parse_status_line(line)) is expected

    def test_unnumbered_line(self):
        """Rows without a rule number cannot be deleted, so never qualify."""
        line = parse_status_line("80                         ALLOW IN    Anywhere")
        assert is_conversion_candidate(line) is False


class TestReplacementCommands:
    """Tests for replacement_commands."""

    def test_any_source(self):
        """Any-source rules use the short form."""
        line = parse_status_line("[ 5] 80                         ALLOW IN    Anywhere")
        assert replacement_commands(line) == [
            ["ufw", "allow", "80/tcp"],
            ["ufw", "allow", "80/udp"],
        ]

    def test_source_and_comment(self):
        """Sourced rules use the full form and keep their comment."""
        line = parse_status_line(
            "[ 3] 8080                       DENY IN     10.0.0.0/8      # Web App"
        )
        assert replacement_commands(line) == [
            ["ufw", "deny", "proto", "tcp", "from", "10.0.0.0/8", "to", "any",
             "port", "8080", "comment", "Web App"],
            ["ufw", "deny", "proto", "udp", "from", "10.0.0.0/8", "to", "any",
             "port", "8080", "comment", "Web App"],
        ]


class TestRuleConverter:
    """Tests for RuleConverter.run."""

    def test_full_conversion(self, mock_ctx):
        """The generic rule is replaced and its IPv6 twin pruned."""
        executor = fake_executor([BEFORE, AFTER_DECOMPOSE, AFTER_PRUNE])

        report = _converter(mock_ctx, executor).run()

        assert mutations(executor) == [
            ["ufw", "--force", "delete", "5"],
            ["ufw", "allow", "80/tcp"],
            ["ufw", "allow", "80/udp"],
            ["ufw", "--force", "delete", "8"],
        ]
        assert report.converted == 1
        assert report.added == 2
        assert report.pruned == 1
        assert report.iterations == 2
        assert report.converged is True
        assert report.changed is True

    def test_nothing_to_convert(self, mock_ctx):
        """Protocol-specific rules are left alone."""
        executor = fake_executor([AFTER_PRUNE])

        report = _converter(mock_ctx, executor).run()

        assert mutations(executor) == []
        assert report.changed is False
        assert report.iterations == 0

    def test_failed_delete_is_counted(self, mock_ctx):
        """A failing delete skips the adds and the prune phase."""
        executor = fake_executor([BEFORE], fails=lambda command: command[2:3] == ["delete"])

        report = _converter(mock_ctx, executor).run()

        assert report.failed_deletions == 1
        assert report.converted == 0
        assert report.added == 0
        assert report.iterations == 0
        mock_ctx.console.warn.assert_called()

    def test_failed_add_is_counted(self, mock_ctx):
        """A failing add does not stop the run."""
        executor = fake_executor(
            [BEFORE, AFTER_DECOMPOSE, AFTER_PRUNE],
            fails=lambda command: command[-1] == "80/udp",
        )

        report = _converter(mock_ctx, executor).run()

        assert report.added == 1
        assert report.failed_additions == 1
        assert report.pruned == 1

    def test_iteration_bound(self, mock_ctx):
        """A twin that never goes away stops after max_iterations passes."""
        executor = fake_executor([BEFORE])

        report = _converter(mock_ctx, executor, max_iterations=3).run()

        assert report.iterations == 3
        assert report.pruned == 3
        assert report.converged is False
        mock_ctx.console.warn.assert_called()

    def test_last_pass_clears_twins(self, mock_ctx):
        """Using up the passes is fine when the last one removed every twin."""
        executor = fake_executor([BEFORE, AFTER_DECOMPOSE, AFTER_PRUNE])

        report = _converter(mock_ctx, executor, max_iterations=1).run()

        assert report.iterations == 1
        assert report.pruned == 1
        assert report.converged is True
        mock_ctx.console.warn.assert_not_called()

    def test_dry_run_single_pass(self, mock_ctx):
        """In a dry run the listing never changes, so one pass is enough."""
        mock_ctx.dry_run = True
        executor = fake_executor([BEFORE])

        report = _converter(mock_ctx, executor).run()

        assert report.iterations == 1
        assert report.pruned == 1
        assert report.converged is True

    def test_uses_conversion_timeout(self, mock_ctx):
        """Conversion commands use the short per-step timeout."""
        executor = fake_executor([BEFORE, AFTER_DECOMPOSE, AFTER_PRUNE])

        _converter(mock_ctx, executor).run()

        delete_call = [
            c for c in executor.run.call_args_list if c.args[0][1] == "--force"
        ][0]
        assert delete_call.kwargs["timeout"] == 5


class TestConversionReport:
    """Tests for ConversionReport."""

    def test_summary(self):
        """summary lists every counter."""
        report = ConversionReport(converted=2, added=4, pruned=2, iterations=2)
        summary = report.summary()

        assert summary["Converted"] == 2
        assert summary["Rules added"] == 4
        assert summary["Failed deletions"] == 0
