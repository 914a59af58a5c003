"""Configuration types with environment variable support.

Tunables can be configured via environment variables with the NODEPROXY_ prefix.
Example: NODEPROXY_CONNECT_TIMEOUT=5 sets the backend dial timeout to 5 seconds.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_NODE_HOST_PATTERN = r"^ip(?P<node>\d{1,3}(?:-\d{1,3}){3})(?:-(?P<port>\d{1,5}))?(?:\.|$)"
DEFAULT_ALIAS_HOST_PATTERN = (
    r"^(?P<alias>[a-z0-9_]+)-(?P<session>[a-z0-9]{8})(?:-(?P<port>\d{1,5}))?(?:\.|$)"
)
SERVER_SECTION_PREFIX = "server_"


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            return tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e


def flatten_config(config: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten nested sections into underscore-joined keys.

    ``{"backend": {"tls_verify": True}}`` becomes ``{"backend_tls_verify": True}``.
    """
    result: dict[str, Any] = {}
    for key, value in config.items():
        full_key = f"{prefix}_{key}" if prefix else key
        if isinstance(value, dict):
            result.update(flatten_config(value, full_key))
        else:
            result[full_key] = value
    return result


def server_settings_from_file(path: str | Path) -> dict[str, Any]:
    """Read ServerConfig fields from a config file.

    Fields may sit at the top level or under a ``server`` section, and
    nested sections are flattened (``backend: {ca_path: ...}`` sets
    ``backend_ca_path``).
    """
    settings: dict[str, Any] = {}
    for key, value in flatten_config(load_config_from_file(path)).items():
        if key.startswith(SERVER_SECTION_PREFIX):
            key = key[len(SERVER_SECTION_PREFIX) :]
        settings[key] = value
    return settings


class ServerConfig(BaseModel):
    """Server configuration."""

    http_bind: str = "0.0.0.0:80"
    control_bind: str = "127.0.0.1:8081"
    port_number: str = Field(
        default="80",
        description="Public port of the proxy. A Host header port equal to it is not a target port.",
    )
    base_domain: str = "localhost"
    cert_path: str | None = None
    key_path: str | None = None
    registry_path: str = Field(
        default="instances.json",
        description="Path to the JSON file storing registered instances.",
    )
    backend_tls_verify: bool = Field(
        default=False,
        description="Verify backend certificates on TLS dials. Off by default.",
    )
    backend_ca_path: str | None = Field(
        default=None,
        description="CA bundle used when backend_tls_verify is enabled.",
    )
    node_host_pattern: str = Field(
        default=DEFAULT_NODE_HOST_PATTERN,
        description="Regex with a 'node' (and optional 'port') group matched against the Host.",
    )
    alias_host_pattern: str = Field(
        default=DEFAULT_ALIAS_HOST_PATTERN,
        description="Regex with 'alias' and 'session' groups matched against the Host.",
    )
    alias_liveness: bool = Field(
        default=False,
        description="Let alias-only hosts pass the liveness gate through an alias lookup.",
    )


class PerformanceConfig(BaseSettings):
    """Relay buffer settings."""

    model_config = SettingsConfigDict(
        env_prefix="NODEPROXY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    relay_buffer_size: int = Field(
        default=64 * 1024,
        description="Maximum bytes read per relay iteration.",
    )
    http_max_body_size: int = Field(
        default=100 * 1024 * 1024,
        description="Maximum request body accepted before a connection is relayed.",
    )


class TimeoutConfig(BaseSettings):
    """Timeout configuration.

    All timeouts are in seconds. Set to 0 or None for indefinite where supported.
    """

    model_config = SettingsConfigDict(
        env_prefix="NODEPROXY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    connect_timeout: float | None = Field(
        default=30.0,
        description="Backend dial timeout (seconds). None or 0 for indefinite.",
    )
    relay_idle_timeout: float | None = Field(
        default=None,
        description="End a relay after this many idle seconds in one direction. None for indefinite.",
    )


class NodeproxyConfig(BaseSettings):
    """Master configuration combining all env-driven settings.

    Use get_config() to get a cached instance.

    Example:
        config = get_config()
        print(config.timeouts.connect_timeout)
    """

    model_config = SettingsConfigDict(
        env_prefix="NODEPROXY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def performance(self) -> PerformanceConfig:
        """Get performance configuration."""
        return PerformanceConfig()

    @property
    def timeouts(self) -> TimeoutConfig:
        """Get timeout configuration."""
        return TimeoutConfig()

    def to_env_dict(self) -> dict[str, str]:
        """Export current configuration as environment variable dictionary."""
        result = {}

        perf = self.performance
        result["NODEPROXY_RELAY_BUFFER_SIZE"] = str(perf.relay_buffer_size)
        result["NODEPROXY_HTTP_MAX_BODY_SIZE"] = str(perf.http_max_body_size)

        timeouts = self.timeouts
        result["NODEPROXY_CONNECT_TIMEOUT"] = (
            str(timeouts.connect_timeout) if timeouts.connect_timeout else ""
        )
        result["NODEPROXY_RELAY_IDLE_TIMEOUT"] = (
            str(timeouts.relay_idle_timeout) if timeouts.relay_idle_timeout else ""
        )

        return result

    def to_display_dict(self) -> dict[str, Any]:
        """Export current configuration as a nested dictionary for display."""
        return {
            "performance": {
                "relay_buffer_size": self.performance.relay_buffer_size,
                "http_max_body_size": self.performance.http_max_body_size,
            },
            "timeouts": {
                "connect_timeout": self.timeouts.connect_timeout,
                "relay_idle_timeout": self.timeouts.relay_idle_timeout,
            },
        }


_config: NodeproxyConfig | None = None


def get_config() -> NodeproxyConfig:
    """Get the global configuration instance.

    The instance is created once and cached for the lifetime of the process.
    To reload config (e.g., in tests), call clear_config() first.
    """
    global _config
    if _config is None:
        _config = NodeproxyConfig()
    return _config


def clear_config() -> None:
    """Clear the cached configuration.

    Call this to force reloading of environment variables on next get_config() call.
    """
    global _config
    _config = None
