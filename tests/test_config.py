"""Configuration: TOML sections, deployments.json and environment overrides."""

from __future__ import annotations

import json

import pytest

from storage_coordinator.config import load_agent_config, load_config
from storage_coordinator.errors import ConfigError

from tests.conftest import CONTRACT_ID

TOML = """
[coordinator]
host = "127.0.0.1"
port = 8080
poll_interval = 2
log_level = "debug"

[stellar]
network = "futurenet"
rpc_url = "https://rpc.example.org"
contract_id = "CTOML"
start_ledger = 12345

[storage]
db_path = "/var/lib/coordinator/state.db"

[transfers]
transfer_timeout = 45.5
max_upload_mb = 8
capacity_aware = false

[provider]
server_url = "http://coordinator:8080"
provider_address = "GPROVIDER"
storage_dir = "/srv/fragments"
reconnect_delay = 2
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "coordinator.toml"
    path.write_text(TOML)
    return path


def test_defaults_without_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    cfg = load_config(None)
    assert cfg.port == 3000
    assert cfg.contract_id == ""
    assert cfg.start_ledger is None
    assert cfg.capacity_aware is True
    assert cfg.max_upload_bytes == 100 * 1024 * 1024


def test_toml_sections(config_file):
    cfg = load_config(config_file)
    assert cfg.host == "127.0.0.1"
    assert cfg.port == 8080
    assert cfg.poll_interval == 2
    assert cfg.log_level == "debug"
    assert cfg.network == "futurenet"
    assert cfg.rpc_url == "https://rpc.example.org"
    assert cfg.contract_id == "CTOML"
    assert cfg.start_ledger == 12345
    assert cfg.db_path == "/var/lib/coordinator/state.db"
    assert cfg.transfer_timeout == 45.5
    assert cfg.max_upload_bytes == 8 * 1024 * 1024
    assert cfg.capacity_aware is False


def test_env_overrides_toml(config_file, monkeypatch):
    monkeypatch.setenv("STORAGE_COORD_CONTRACT_ID", CONTRACT_ID)
    monkeypatch.setenv("STORAGE_COORD_PORT", "9000")
    monkeypatch.setenv("STORAGE_COORD_TRANSFER_TIMEOUT", "12")

    cfg = load_config(config_file)
    assert cfg.contract_id == CONTRACT_ID
    assert cfg.port == 9000
    assert cfg.transfer_timeout == 12.0
    assert cfg.host == "127.0.0.1"


def test_contract_id_from_deployments(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "deployments.json").write_text(
        json.dumps({"storage_marketplace": {"contract_id": CONTRACT_ID}})
    )
    assert load_config(None).contract_id == CONTRACT_ID


def test_deployments_path_setting(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    deployments = tmp_path / "chain" / "testnet.json"
    deployments.parent.mkdir()
    deployments.write_text(json.dumps({"storage_marketplace": {"contract_id": "CDEPLOYED"}}))
    config_file = tmp_path / "c.toml"
    config_file.write_text(f'[stellar]\ndeployments_path = "{deployments}"\n')

    assert load_config(config_file).contract_id == "CDEPLOYED"


def test_explicit_contract_id_beats_deployments(config_file, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "deployments.json").write_text(
        json.dumps({"storage_marketplace": {"contract_id": "CDEPLOYED"}})
    )
    assert load_config(config_file).contract_id == "CTOML"


def test_broken_deployments_is_config_error(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "deployments.json").write_text("{not json")
    with pytest.raises(ConfigError):
        load_config(None)


def test_bad_value_is_config_error(tmp_path):
    path = tmp_path / "bad.toml"
    path.write_text('[coordinator]\nport = "eighty"\n')
    with pytest.raises(ConfigError, match="port"):
        load_config(path)


def test_bad_env_value_is_config_error(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("STORAGE_COORD_START_LEDGER", "latest")
    with pytest.raises(ConfigError, match="STORAGE_COORD_START_LEDGER"):
        load_config(None)


def test_invalid_toml_is_config_error(tmp_path):
    path = tmp_path / "broken.toml"
    path.write_text("[coordinator\nport = 1")
    with pytest.raises(ConfigError):
        load_config(path)


def test_db_path_expands_home(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("STORAGE_COORD_DB_PATH", "~/state.db")
    assert load_config(None).db_path == str(tmp_path / "state.db")


def test_agent_config(config_file, monkeypatch):
    cfg = load_agent_config(config_file)
    assert cfg.server_url == "http://coordinator:8080"
    assert cfg.provider_address == "GPROVIDER"
    assert cfg.storage_dir == "/srv/fragments"
    assert cfg.reconnect_delay == 2.0

    monkeypatch.setenv("STORAGE_COORD_PROVIDER_ADDRESS", "GOTHER")
    assert load_agent_config(config_file).provider_address == "GOTHER"
