"""Server configuration with environment variable support.

All settings can be configured via environment variables with the EPHEMERA_
prefix, or from a YAML/TOML file. Environment variables win over file values.

Example:
    EPHEMERA_CLEAN_INTERVAL=300 sets clean_interval to five minutes.

Nested tables in a config file are flattened with an underscore, so

    [oauth]
    client_id = "..."

sets ``oauth_client_id``.
"""

from __future__ import annotations

import tomllib
from ipaddress import IPv4Network, IPv6Network, ip_network
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

UPLOAD_USER_EMAIL = "upload"
DEFAULT_CHAIN_NAME = "EPHEMERA-WHITELIST"


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
    result: dict[str, Any] = {}
    for key, value in config.items():
        full_key = f"{prefix}_{key}" if prefix else key
        if isinstance(value, dict):
            result.update(flatten_config(value, full_key))
        else:
            result[full_key] = value
    return result


class ServerConfig(BaseSettings):
    """Ephemera server configuration."""

    model_config = SettingsConfigDict(
        env_prefix="EPHEMERA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = Field(
        default="development",
        description="Deployment environment name, attached to every log line.",
    )
    log_level: str = Field(
        default="info",
        description="Log level: debug, info, warning or error.",
    )
    data_path: str = Field(
        default="/var/lib/ephemera",
        description="Root directory holding image and instance data.",
    )
    public_hostname: str = Field(
        default="localhost",
        description="Hostname clients use to reach instances.",
    )
    http_listen_address: str = Field(
        default="0.0.0.0:8443",
        description="Bind address for the API server.",
    )
    http_insecure_port: int | None = Field(
        default=None,
        ge=1,
        le=65535,
        description="Also serve plain HTTP on 127.0.0.1 at this port, for local tooling.",
    )
    http_tls_certificate: str | None = Field(
        default=None,
        description="TLS certificate path. The API is served in plain HTTP when unset.",
    )
    http_tls_private_key: str | None = Field(
        default=None,
        description="TLS private key path.",
    )
    shared_secret: str = Field(
        default="",
        repr=False,
        description="Bearer secret that authenticates the trusted upload identity.",
    )
    trusted_user_email_domain: str = Field(
        default="",
        description="Email domain every OAuth-authenticated user must belong to.",
    )
    min_instance_port: int = Field(
        default=6432,
        ge=1,
        le=65535,
        description="Lowest port handed out to instances (inclusive).",
    )
    max_instance_port: int = Field(
        default=7432,
        ge=1,
        le=65535,
        description="Upper bound of the instance port range (exclusive).",
    )
    oauth_client_id: str = Field(
        default="",
        description="Google OAuth client ID.",
    )
    oauth_client_secret: str = Field(
        default="",
        repr=False,
        description="Google OAuth client secret.",
    )
    oauth_redirect_url: str = Field(
        default="http://localhost:8443/oauth_callback",
        description="Callback URL registered with the identity provider.",
    )
    clean_interval: float = Field(
        default=600.0,
        gt=0,
        description="Seconds between sweeps for instances with revoked credentials.",
    )
    enable_ip_whitelisting: bool = Field(
        default=False,
        description="Manage the iptables whitelist chain for instance ports.",
    )
    whitelist_reconcile_interval: float = Field(
        default=60.0,
        gt=0,
        description="Seconds between periodic whitelist reconciliations.",
    )
    whitelist_chain_name: str = Field(
        default=DEFAULT_CHAIN_NAME,
        description="iptables chain owned by the reconciler.",
    )
    trusted_proxy_cidrs: list[str] = Field(
        default_factory=list,
        description="Proxy networks skipped when reading X-Forwarded-For.",
    )
    use_x_forwarded_for: bool = Field(
        default=False,
        description="Derive the caller IP from X-Forwarded-For.",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # File values arrive as init kwargs; the environment overrides them.
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @field_validator("trusted_proxy_cidrs")
    @classmethod
    def _validate_cidrs(cls, value: list[str]) -> list[str]:
        for cidr in value:
            try:
                ip_network(cidr.strip(), strict=False)
            except ValueError as e:
                raise ValueError(f"invalid trusted proxy CIDR {cidr!r}") from e
        return value

    @model_validator(mode="after")
    def _validate_ranges(self) -> ServerConfig:
        if self.min_instance_port >= self.max_instance_port:
            raise ValueError("min_instance_port must be lower than max_instance_port")
        if self.enable_ip_whitelisting and not self.whitelist_chain_name:
            raise ValueError("whitelist_chain_name is required when IP whitelisting is enabled")
        return self

    @property
    def trusted_proxy_networks(self) -> list[IPv4Network | IPv6Network]:
        return [ip_network(cidr.strip(), strict=False) for cidr in self.trusted_proxy_cidrs]

    @property
    def tls_enabled(self) -> bool:
        return bool(self.http_tls_certificate and self.http_tls_private_key)

    @classmethod
    def from_file(cls, path: str | Path) -> ServerConfig:
        """Build a validated config from a YAML or TOML file."""
        return cls(**flatten_config(load_config_from_file(path)))
