"""App configuration loading helpers."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Literal

import tomllib

from pydantic import BaseModel, Field, ValidationError

CONFIG_FILE = Path.home() / ".config" / "rediscope" / "config.toml"

LOG = logging.getLogger(__name__)


class TlsConfig(BaseModel):
    """TLS block nested under a profile."""

    ca_file: str | None = None
    cert_file: str | None = None
    key_file: str | None = None
    verify: bool = True
    server_hostname: str | None = None


class SshTunnelConfig(BaseModel):
    """SSH tunnel block nested under a profile."""

    host: str
    username: str
    port: int = 22
    auth: Literal["password", "private_key", "agent"] = "private_key"
    password: str | None = None
    private_key: str | None = None
    passphrase: str | None = None
    known_hosts: str | None = None
    verify_host_key: bool = True


class ConnectionProfileConfig(BaseModel):
    """Connection profile configuration stored in config.toml."""

    name: str
    host: str = "127.0.0.1"
    port: int = 6379
    seeds: list[str] = Field(default_factory=list)
    username: str | None = None
    password: str | None = None
    tls: TlsConfig | None = None
    ssh: SshTunnelConfig | None = None
    readonly: bool = False
    database: int = Field(default=0, ge=0)
    key_separator: str = ":"
    master_name: str | None = None
    connect_timeout: float = Field(default=5.0, gt=0)
    response_timeout: float = Field(default=30.0, gt=0)
    protocol: int = Field(default=2, ge=2, le=3)


class PoolSettings(BaseModel):
    """Connection pool sizing and lifecycle thresholds (seconds)."""

    max_connections_per_node: int = Field(default=4, ge=1)
    idle_timeout: float = Field(default=300.0, gt=0)
    health_check_grace: float = Field(default=30.0, ge=0)
    prune_interval: float = Field(default=60.0, gt=0)


class ClusterSettings(BaseModel):
    """Redirect handling limits for cluster deployments."""

    max_redirects: int = Field(default=5, ge=1)
    storm_threshold: int = Field(default=3, ge=1)
    storm_window: float = Field(default=5.0, gt=0)


class ScanSettings(BaseModel):
    """Defaults for keyspace enumeration."""

    batch_size: int = Field(default=500, ge=1)
    page_limit: int = Field(default=2000, ge=1)


class DisplaySettings(BaseModel):
    """Limits applied when rendering decoded values."""

    json_string_limit: int = Field(default=1024, ge=1)
    hex_wide_threshold: int = Field(default=256, ge=0)
    hex_max_bytes: int = Field(default=64 * 1024, ge=16)
    collection_page_size: int = Field(default=100, ge=1)


class AppConfig(BaseModel):
    """Shape of the application configuration file."""

    profiles: list[ConnectionProfileConfig] = Field(default_factory=lambda: list(_default_profiles()))
    active_profile: str | None = None
    pool: PoolSettings = Field(default_factory=PoolSettings)
    cluster: ClusterSettings = Field(default_factory=ClusterSettings)
    scan: ScanSettings = Field(default_factory=ScanSettings)
    display: DisplaySettings = Field(default_factory=DisplaySettings)

    def profile(self, name: str) -> ConnectionProfileConfig | None:
        for entry in self.profiles:
            if entry.name == name:
                return entry
        return None

    def with_active_profile(self, name: str) -> AppConfig:
        """Return a copy with the active profile updated."""

        return self.model_copy(update={"active_profile": name})

    def with_profile(self, profile: ConnectionProfileConfig) -> AppConfig:
        """Return a copy with the profile added or replaced by name."""

        profiles = [entry for entry in self.profiles if entry.name != profile.name]
        profiles.append(profile)
        return self.model_copy(update={"profiles": profiles})

    def with_pool(self, **updates: object) -> AppConfig:
        """Return a copy with pool settings changes applied."""

        pool = self.pool.model_copy(update=updates)
        return self.model_copy(update={"pool": pool})


_SECTIONS: dict[str, type[BaseModel]] = {
    "pool": PoolSettings,
    "cluster": ClusterSettings,
    "scan": ScanSettings,
    "display": DisplaySettings,
}


def load_config() -> AppConfig:
    """Load configuration from disk; fall back to defaults if missing."""

    try:
        data = _read_config_file()
    except FileNotFoundError:
        return AppConfig()
    except (tomllib.TOMLDecodeError, OSError) as exc:
        LOG.warning("Ignoring unreadable config %s: %s", CONFIG_FILE, exc)
        return AppConfig()

    values: dict[str, object] = {}
    profiles_data = data.get("profiles")
    if isinstance(profiles_data, list):
        profiles: list[ConnectionProfileConfig] = []
        for entry in profiles_data:
            if not isinstance(entry, dict):
                continue
            try:
                profiles.append(ConnectionProfileConfig.model_validate(entry))
            except ValidationError as exc:
                LOG.warning("Skipping invalid profile %r: %s", entry.get("name"), exc)
        if profiles:
            values["profiles"] = profiles
    active_profile = data.get("active_profile")
    if isinstance(active_profile, str):
        values["active_profile"] = active_profile
    for section, model in _SECTIONS.items():
        raw = data.get(section)
        if not isinstance(raw, dict):
            continue
        try:
            values[section] = model.model_validate(raw)
        except ValidationError as exc:
            LOG.warning("Using defaults for [%s]: %s", section, exc)
    return AppConfig(**values)


def save_config(config: AppConfig) -> None:
    """Persist configuration to disk."""

    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    lines: list[str] = []
    if config.active_profile:
        lines.append(f"active_profile = {_quote(config.active_profile)}")
    for section in _SECTIONS:
        model: BaseModel = getattr(config, section)
        lines.append("")
        lines.append(f"[{section}]")
        lines.extend(_table_lines(model.model_dump()))
    for profile in config.profiles:
        lines.append("")
        lines.append("[[profiles]]")
        lines.extend(_table_lines(profile.model_dump(exclude={"tls", "ssh"}, exclude_none=True)))
        if profile.tls is not None:
            lines.append("[profiles.tls]")
            lines.extend(_table_lines(profile.tls.model_dump(exclude_none=True)))
        if profile.ssh is not None:
            lines.append("[profiles.ssh]")
            lines.extend(_table_lines(profile.ssh.model_dump(exclude_none=True)))
    CONFIG_FILE.write_text("\n".join(lines).lstrip("\n") + "\n")


def _table_lines(values: dict[str, object]) -> list[str]:
    return [f"{key} = {_toml_value(value)}" for key, value in values.items()]


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return _quote(str(value))


def _quote(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def _read_config_file() -> dict[str, object]:
    with CONFIG_FILE.open("rb") as handle:
        raw = tomllib.load(handle)
    return raw if isinstance(raw, dict) else {}


def _default_profiles() -> tuple[ConnectionProfileConfig, ...]:
    """Default profiles shown on first run before config is customized."""

    return (
        ConnectionProfileConfig(
            name="Local Redis",
            host="127.0.0.1",
            port=6379,
        ),
    )
