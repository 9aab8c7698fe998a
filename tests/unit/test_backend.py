"""Unit tests for backend detection and service construction."""

import pytest
from unittest.mock import Mock, patch

from fwagent.core.config import (
    AgentConfig,
    AppConfig,
    BackendConfig,
    ConversionConfig,
    MachineConfig,
)
from fwagent.core.exceptions import ExecutionError, PrerequisiteError
from fwagent.core.executor import CommandResult
from fwagent.services.backend import create_service, detect_backend, detect_providers
from fwagent.services.firewalld import FirewalldService
from fwagent.services.ufw import UfwService


def _which(*installed):
    return lambda name: f"/usr/bin/{name}" if name in installed else None


def _executor(state="running\n", return_code=0):
    executor = Mock()
    executor.run.return_value = CommandResult(["firewall-cmd", "--state"], return_code, state, "")
    return executor


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("FWAGENT_AGENT_ID", "FWAGENT_BACKEND", "FWAGENT_ZONE"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def mock_ctx():
    ctx = Mock()
    ctx.dry_run = False
    return ctx


class TestDetectProviders:
    """Tests for detect_providers and detect_backend."""

    @patch("fwagent.services.backend.shutil.which")
    def test_running_firewalld_wins(self, mock_which):
        """A running firewalld is preferred over ufw."""
        mock_which.side_effect = _which("firewall-cmd", "ufw")

        assert detect_backend(_executor()) == "firewalld"

    @patch("fwagent.services.backend.shutil.which")
    def test_stopped_firewalld_falls_back_to_ufw(self, mock_which):
        """ufw is used when firewalld is installed but stopped."""
        mock_which.side_effect = _which("firewall-cmd", "ufw")

        status = detect_providers(_executor("not running\n", 252))

        assert status.firewalld_installed is True
        assert status.firewalld_running is False
        assert detect_backend(_executor("not running\n", 252)) == "ufw"

    @patch("fwagent.services.backend.shutil.which")
    def test_only_stopped_firewalld(self, mock_which):
        """A stopped firewalld alone is a prerequisite failure."""
        mock_which.side_effect = _which("firewall-cmd")

        with pytest.raises(PrerequisiteError) as exc:
            detect_backend(_executor("not running\n", 252))
        assert "not running" in exc.value.message

    @patch("fwagent.services.backend.shutil.which")
    def test_nothing_installed(self, mock_which):
        """No firewall at all is a prerequisite failure."""
        mock_which.side_effect = _which()

        with pytest.raises(PrerequisiteError):
            detect_backend(Mock())

    @patch("fwagent.services.backend.shutil.which")
    def test_state_probe_error(self, mock_which):
        """An unreadable firewalld state counts as not running."""
        mock_which.side_effect = _which("firewall-cmd")
        executor = Mock()
        executor.run.side_effect = ExecutionError("Command timed out after 10s: firewall-cmd --state")

        status = detect_providers(executor)

        assert status.firewalld_running is False
        assert status.ufw_installed is False


class TestCreateService:
    """Tests for create_service."""

    def test_ufw(self, mock_ctx):
        """A ufw config gives a UfwService with the agent id."""
        app_config = AppConfig(config=MachineConfig(
            agent=AgentConfig(agent_id="web-01"),
            backend=BackendConfig(type="ufw"),
        ))

        service = create_service(mock_ctx, Mock(), app_config)

        assert isinstance(service, UfwService)
        assert service.agent_id == "web-01"
        assert service.zone == "public"

    def test_firewalld(self, mock_ctx):
        """A firewalld config gives a FirewalldService on the configured zone."""
        app_config = AppConfig(config=MachineConfig(
            backend=BackendConfig(type="firewalld", zone="internal"),
        ))

        service = create_service(mock_ctx, Mock(), app_config)

        assert isinstance(service, FirewalldService)
        assert service.zone == "internal"

    @patch("fwagent.services.backend.detect_backend")
    def test_auto_detects(self, mock_detect, mock_ctx):
        """auto asks detect_backend."""
        mock_detect.return_value = "firewalld"

        service = create_service(mock_ctx, Mock(), AppConfig(config=MachineConfig()))

        assert isinstance(service, FirewalldService)
        mock_detect.assert_called_once()

    @patch("fwagent.services.backend.RuleConverter")
    def test_conversion_on_start(self, mock_converter, mock_ctx):
        """run_on_start converts generic ufw rules once."""
        mock_converter.return_value.run.return_value = Mock(changed=True, converted=1, pruned=1)
        app_config = AppConfig(config=MachineConfig(
            backend=BackendConfig(type="ufw"),
            conversion=ConversionConfig(run_on_start=True, max_iterations=3),
        ))

        service = create_service(mock_ctx, Mock(), app_config)

        mock_converter.assert_called_once_with(mock_ctx, service, max_iterations=3)
        mock_ctx.console.info.assert_called_once()

    @patch("fwagent.services.backend.RuleConverter")
    def test_conversion_skipped(self, mock_converter, mock_ctx):
        """convert_on_start=False suppresses the start-up conversion."""
        app_config = AppConfig(config=MachineConfig(
            backend=BackendConfig(type="ufw"),
            conversion=ConversionConfig(run_on_start=True),
        ))

        create_service(mock_ctx, Mock(), app_config, convert_on_start=False)

        mock_converter.assert_not_called()
