"""Tests for AppConfig helpers."""

from __future__ import annotations

from pathlib import Path

import pytest

from rediscope import config as config_module
from rediscope.config import AppConfig, ConnectionProfileConfig, SshTunnelConfig, TlsConfig, load_config, save_config


def test_defaults_include_a_local_profile() -> None:
    config = AppConfig()

    assert [profile.name for profile in config.profiles] == ["Local Redis"]
    assert config.pool.max_connections_per_node == 4
    assert config.cluster.max_redirects == 5
    assert config.display.json_string_limit == 1024


def test_load_config_returns_defaults_when_missing(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config_module, "CONFIG_FILE", tmp_path / "config.toml")

    result = load_config()

    assert result == AppConfig()


def test_load_config_reads_values(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text(
        """
active_profile = "Cache"

[pool]
max_connections_per_node = 8
idle_timeout = 120

[scan]
batch_size = 1000

[[profiles]]
name = "Cache"
host = "cache.internal"
port = 6380
readonly = true

[profiles.tls]
verify = false

[[profiles]]
name = "Cluster"
seeds = ["10.0.0.1:7000", "10.0.0.2:7000"]
"""
    )
    monkeypatch.setattr(config_module, "CONFIG_FILE", config_path)

    result = load_config()

    assert result.active_profile == "Cache"
    assert result.pool.max_connections_per_node == 8
    assert result.pool.idle_timeout == 120
    assert result.scan.batch_size == 1000
    cache = result.profile("Cache")
    assert cache is not None
    assert cache.port == 6380
    assert cache.readonly is True
    assert cache.tls == TlsConfig(verify=False)
    assert result.profile("Cluster").seeds == ["10.0.0.1:7000", "10.0.0.2:7000"]  # type: ignore[union-attr]


def test_load_config_skips_invalid_profiles(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text(
        """
[[profiles]]
name = "Broken"
database = -1

[[profiles]]
name = "Fine"
"""
    )
    monkeypatch.setattr(config_module, "CONFIG_FILE", config_path)

    result = load_config()

    assert [profile.name for profile in result.profiles] == ["Fine"]


def test_invalid_section_falls_back_to_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text("[cluster]\nmax_redirects = 0\n")
    monkeypatch.setattr(config_module, "CONFIG_FILE", config_path)

    result = load_config()

    assert result.cluster.max_redirects == 5


def test_load_config_handles_toml_errors(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text("active_profile = [unterminated")
    monkeypatch.setattr(config_module, "CONFIG_FILE", config_path)

    result = load_config()

    assert result == AppConfig()


def test_save_config_round_trips(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "nested" / "config.toml"
    monkeypatch.setattr(config_module, "CONFIG_FILE", config_path)
    original = AppConfig(
        profiles=[
            ConnectionProfileConfig(
                name="Prod",
                host="redis.prod",
                password='p"ss',
                readonly=True,
                tls=TlsConfig(ca_file="/etc/ca.pem"),
                ssh=SshTunnelConfig(host="bastion", username="ops", auth="password", password="pw"),
            )
        ],
        active_profile="Prod",
    ).with_pool(max_connections_per_node=2)

    save_config(original)

    content = config_path.read_text()
    assert 'active_profile = "Prod"' in content
    assert "[[profiles]]" in content
    assert "[profiles.ssh]" in content
    assert load_config() == original


def test_with_profile_replaces_by_name() -> None:
    config = AppConfig()

    updated = config.with_profile(ConnectionProfileConfig(name="Local Redis", port=6390))

    assert len(updated.profiles) == 1
    assert updated.profiles[0].port == 6390


def test_with_active_profile_updates_field() -> None:
    config = AppConfig()

    updated = config.with_active_profile("Local Redis")

    assert updated.active_profile == "Local Redis"
