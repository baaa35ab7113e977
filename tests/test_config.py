"""Environment parsing and startup validation."""

import pytest

from primekeeper.config import DEFAULT_REJECTIONS, load_config, parse_rejections
from primekeeper.errors import ConfigError

TEST_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"


def test_defaults_cover_both_chains():
    cfg = load_config(env={})
    assert [c.name for c in cfg.chains] == ["Arbitrum", "Avalanche"]
    assert len(cfg.chain("arbitrum").resources) == 14
    assert len(cfg.chain("avalanche").resources) == 6
    assert cfg.chain("arbitrum").token_manager
    assert cfg.chain("avalanche").token_manager is None
    assert cfg.progress_file == "sweep-progress.json"
    assert cfg.rejections == DEFAULT_REJECTIONS
    cfg.validate()


def test_env_overrides():
    cfg = load_config(env={
        "KEEPER_CHAINS": "avalanche",
        "RPC_AVALANCHE_URL": "https://a.example/rpc, https://b.example/rpc",
        "KEEPER_BATCH_SIZE": "25",
        "KEEPER_TX_DELAY": "0",
        "KEEPER_PROGRESS_FILE": "/var/lib/keeper/progress.db",
        "LIQUIDATOR_PRIVATE_KEY": TEST_KEY,
    })
    assert [c.name for c in cfg.chains] == ["Avalanche"]
    assert cfg.chains[0].rpc_urls == ("https://a.example/rpc", "https://b.example/rpc")
    assert cfg.batch_size == 25
    assert cfg.tx_delay == 0.0
    assert cfg.progress_file.endswith(".db")
    cfg.validate(require_signer=True)


def test_missing_signer_fails_fast():
    with pytest.raises(ConfigError, match="LIQUIDATOR_PRIVATE_KEY"):
        load_config(env={}).validate(require_signer=True)


def test_bad_signer_fails_fast():
    with pytest.raises(ConfigError, match="invalid private key"):
        load_config(env={"LIQUIDATOR_PRIVATE_KEY": "0x1234"}).validate(require_signer=True)


@pytest.mark.parametrize("env", [
    {"KEEPER_CHAINS": "polygon"},
    {"KEEPER_BATCH_SIZE": "many"},
    {"KEEPER_REJECTIONS": "no-equals-sign"},
])
def test_bad_values_are_config_errors(env):
    with pytest.raises(ConfigError):
        load_config(env=env)


@pytest.mark.parametrize("env", [
    {"KEEPER_BATCH_SIZE": "0"},
    {"KEEPER_MIN_CONFIRMATIONS": "0"},
    {"KEEPER_CONFIRMATION_TIMEOUT": "-1"},
    {"TOKEN_MANAGER_ADDRESS": "not-an-address"},
])
def test_validate_rejects_out_of_range(env):
    with pytest.raises(ConfigError):
        load_config(env=env).validate()


def test_parse_rejections():
    assert parse_rejections("insolvent=become insolvent; paused=Pausable: paused") == (
        ("insolvent", "become insolvent"),
        ("paused", "Pausable: paused"),
    )
    assert parse_rejections("") == DEFAULT_REJECTIONS


def test_only_filters_chains():
    cfg = load_config(env={}).only(["Avalanche"])
    assert [c.name for c in cfg.chains] == ["Avalanche"]
    with pytest.raises(ConfigError):
        cfg.chain("arbitrum")
