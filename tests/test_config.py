"""Tests for settings loading and network lookup"""

import os

import pytest

from deploypool.config import Settings, load_env_files, load_settings
from deploypool.constants import (
    DEFAULT_JOB_TIMEOUT_SECONDS,
    DEFAULT_PORT,
    VERIFY_COMMAND,
    VERIFY_RETRY_DELAYS_SECONDS,
)
from deploypool.exception import UnsupportedNetworkError


def test_load_settings_defaults():
    """An empty environment still gives a usable configuration"""

    settings = load_settings({})

    assert settings.pool_size >= 1
    assert settings.job_timeout == DEFAULT_JOB_TIMEOUT_SECONDS
    assert settings.port == DEFAULT_PORT
    assert settings.default_chain is None
    assert settings.private_key is None
    assert settings.allowed_origins == ("http://localhost:3008",)
    assert settings.verification.retry_delays == VERIFY_RETRY_DELAYS_SECONDS
    assert settings.verification.command == VERIFY_COMMAND


def test_load_settings_reads_environment():
    settings = load_settings(
        {
            "DEPLOYPOOL_WORKERS": "3",
            "DEPLOYPOOL_JOB_TIMEOUT": "60",
            "DEPLOYPOOL_VERIFY_INITIAL_DELAY": "5",
            "DEPLOYPOOL_VERIFY_RETRY_DELAYS": "1, 2,3",
            "DEPLOYPOOL_VERIFY_COMMAND": "npx hardhat verify",
            "CHAIN_NAME": "bsc-testnet",
            "PRIVATE_KEY": "0xabc",
            "PORT": "8080",
            "ALLOWED_ORIGINS": "https://app.example.com, http://localhost:3008",
            "HARDHAT_PROJECT_DIR": "/srv/contracts",
        }
    )

    assert settings.pool_size == 3
    assert settings.job_timeout == 60.0
    assert settings.verification.initial_delay == 5.0
    assert settings.verification.retry_delays == (1.0, 2.0, 3.0)
    assert settings.verification.cwd == "/srv/contracts"
    assert settings.default_chain == "bsc-testnet"
    assert settings.port == 8080
    assert settings.allowed_origins == ("https://app.example.com", "http://localhost:3008")


def test_private_key_is_not_in_repr():
    settings = load_settings({"PRIVATE_KEY": "0xsecret"})

    assert "0xsecret" not in repr(settings)


def test_default_networks():
    """Every supported chain is present; verification depends on an explorer key"""

    settings = load_settings({"BSCSCAN_API_KEY": "bsc-key"})

    assert set(settings.networks) == {
        "bsc",
        "bsc-testnet",
        "ethereum",
        "ethereum-testnet",
        "somnia-mainnet",
        "somnia-testnet",
    }
    assert settings.network("bsc").verifies
    assert settings.network("bsc-testnet").verification_network == "bscTestnet"
    assert not settings.network("ethereum").verifies
    assert settings.network("ethereum-testnet").verification_network == "sepolia"
    assert settings.network("somnia-testnet").chain_id == 50312
    assert settings.network("somnia-mainnet").contracts["WSTT"] == "0x046EDe9564A72571df6F5e44d0405360c0f4dCab"


def test_unknown_network(settings: Settings):
    with pytest.raises(UnsupportedNetworkError, match="MARS_MAINNET"):
        settings.network("MARS_MAINNET")


def test_env_local_overrides_env(tmp_path, monkeypatch):
    """.env.local wins over .env"""

    monkeypatch.delenv("DEPLOYPOOL_TEST_VALUE", raising=False)
    (tmp_path / ".env").write_text("DEPLOYPOOL_TEST_VALUE=base\n")
    (tmp_path / ".env.local").write_text("DEPLOYPOOL_TEST_VALUE=local\n")

    load_env_files(tmp_path)

    assert os.environ["DEPLOYPOOL_TEST_VALUE"] == "local"
    monkeypatch.delenv("DEPLOYPOOL_TEST_VALUE")
