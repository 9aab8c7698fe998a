"""Configuration management using Pydantic.

Provides:
- Typed configuration models with validation
- YAML file loading with defaults
- Environment variable overrides
- Configuration initialization and display
"""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from fwagent.core.exceptions import ConfigurationError


# Default configuration paths
DEFAULT_CONFIG_PATH = Path("/etc/fwagent/config.yaml")
DEFAULT_IDENTITY_FILE = Path("/var/lib/fwagent/agent_id")
DEFAULT_AUDIT_LOG = Path("/var/log/fwagent/audit.log")

BACKEND_TYPES = ("auto", "firewalld", "ufw")


class AgentConfig(BaseModel):
    """Agent identity.

    The agent id is stamped on every rule this host reports. When not set
    here it is read from the identity file, which the agent never writes.
    """

    agent_id: Optional[str] = None
    identity_file: Path = DEFAULT_IDENTITY_FILE


class BackendConfig(BaseModel):
    """Firewall backend selection."""

    type: str = "auto"
    zone: str = "public"
    use_sudo: bool = False

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        v = v.lower()
        if v not in BACKEND_TYPES:
            raise ValueError(f"Backend type must be one of: {list(BACKEND_TYPES)}")
        return v

    @field_validator("zone")
    @classmethod
    def validate_zone(cls, v: str) -> str:
        if not v or not v.replace("-", "").replace("_", "").isalnum():
            raise ValueError("zone must be a non-empty alphanumeric name")
        return v


class TimeoutConfig(BaseModel):
    """Per-call timeouts in seconds."""

    status: int = 10
    mutation: int = 30
    conversion_step: int = 5
    reload: int = 10

    @field_validator("status", "mutation", "conversion_step", "reload")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("timeouts must be positive")
        return v


class ConversionConfig(BaseModel):
    """Generic ufw rule conversion settings."""

    max_iterations: int = 5
    run_on_start: bool = False

    @field_validator("max_iterations")
    @classmethod
    def validate_iterations(cls, v: int) -> int:
        if not 1 <= v <= 100:
            raise ValueError("max_iterations must be between 1 and 100")
        return v


class AuditConfig(BaseModel):
    """Audit log settings."""

    enabled: bool = True
    path: Path = DEFAULT_AUDIT_LOG


class MachineConfig(BaseModel):
    """Root configuration model, loaded from /etc/fwagent/config.yaml."""

    agent: AgentConfig = Field(default_factory=AgentConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    conversion: ConversionConfig = Field(default_factory=ConversionConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)

    @classmethod
    def load(cls, path: Path) -> "MachineConfig":
        """Load configuration from YAML file.

        Args:
            path: Path to configuration file

        Returns:
            Loaded configuration

        Raises:
            ConfigurationError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {path}",
                hint="Create it with: fwagent config init",
            )

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in configuration file: {path}",
                details=[str(e)],
            ) from e
        except PermissionError:
            raise ConfigurationError(
                f"Cannot read configuration file: {path}",
                hint="Check file permissions or run with sudo",
            )

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Configuration file must contain a mapping: {path}",
            )

        try:
            return cls(**data)
        except Exception as e:
            raise ConfigurationError(
                f"Invalid configuration: {e}",
                details=[str(e)],
            ) from e

    @classmethod
    def load_or_default(cls, path: Optional[Path] = None) -> "MachineConfig":
        """Load configuration, falling back to defaults if file doesn't exist."""
        if path is None:
            path = DEFAULT_CONFIG_PATH

        if path.exists():
            return cls.load(path)
        return cls()

    def to_yaml(self) -> str:
        """Convert configuration to YAML string."""
        data = self.model_dump(mode="json", exclude_none=True)
        return yaml.dump(data, default_flow_style=False, sort_keys=False)


class EnvOverrides(BaseSettings):
    """Overrides read from the environment.

    These win over the config file so a unit file or container can pin
    the backend without editing YAML.
    """

    model_config = SettingsConfigDict(extra="ignore")

    fwagent_agent_id: Optional[str] = Field(None, alias="FWAGENT_AGENT_ID")
    fwagent_backend: Optional[str] = Field(None, alias="FWAGENT_BACKEND")
    fwagent_zone: Optional[str] = Field(None, alias="FWAGENT_ZONE")


class AppConfig:
    """Application configuration combining config file and environment.

    This is the main interface for accessing configuration throughout the app.
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        config: Optional[MachineConfig] = None,
    ) -> None:
        self.config_path = config_path or DEFAULT_CONFIG_PATH
        self._config = config or MachineConfig.load_or_default(self.config_path)
        self._env = EnvOverrides()

    @property
    def config(self) -> MachineConfig:
        """Get the machine configuration."""
        return self._config

    @property
    def env(self) -> EnvOverrides:
        """Get the environment overrides."""
        return self._env

    @property
    def backend_type(self) -> str:
        """Configured backend, environment first."""
        value = self._env.fwagent_backend or self._config.backend.type
        value = value.lower()
        if value not in BACKEND_TYPES:
            raise ConfigurationError(
                f"Invalid backend: {value}",
                hint=f"Use one of: {', '.join(BACKEND_TYPES)}",
            )
        return value

    @property
    def zone(self) -> str:
        return self._env.fwagent_zone or self._config.backend.zone

    @property
    def timeouts(self) -> TimeoutConfig:
        """Shortcut to timeout config."""
        return self._config.timeouts

    @property
    def conversion(self) -> ConversionConfig:
        """Shortcut to conversion config."""
        return self._config.conversion

    @property
    def audit(self) -> AuditConfig:
        """Shortcut to audit config."""
        return self._config.audit

    @property
    def agent_id(self) -> str:
        """Resolve the agent id.

        Order: environment, config file, identity file. An unreadable or
        missing identity file yields an empty id.
        """
        if self._env.fwagent_agent_id:
            return self._env.fwagent_agent_id
        if self._config.agent.agent_id:
            return self._config.agent.agent_id
        try:
            return self._config.agent.identity_file.read_text().strip()
        except OSError:
            return ""


def get_example_config() -> str:
    """Generate example configuration file content."""
    return """# fwagent configuration

# Agent identity (falls back to identity_file, then empty)
agent:
  # agent_id: web-01
  identity_file: /var/lib/fwagent/agent_id

# Firewall backend
backend:
  type: auto      # auto, firewalld, ufw
  zone: public    # firewalld zone; ufw always reports "public"

# Per-call timeouts in seconds
timeouts:
  status: 10
  mutation: 30
  conversion_step: 5
  reload: 10

# Generic ufw rule conversion
conversion:
  max_iterations: 5
  run_on_start: false

# JSON audit log
audit:
  enabled: true
  path: /var/log/fwagent/audit.log

# Environment overrides:
#   FWAGENT_AGENT_ID, FWAGENT_BACKEND, FWAGENT_ZONE
"""


def init_config(path: Path, force: bool = False) -> None:
    """Initialize a new configuration file.

    Args:
        path: Path to create config file
        force: Overwrite if exists

    Raises:
        ConfigurationError: If file exists and force is False
    """
    if path.exists() and not force:
        raise ConfigurationError(
            f"Configuration file already exists: {path}",
            hint="Use --force to overwrite",
        )

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(get_example_config())
    os.chmod(path, 0o600)
