"""Pytest configuration and fixtures"""

import pytest

from deploypool.config import NetworkConfig, Settings, VerificationPolicy


def make_networks() -> dict[str, NetworkConfig]:
    return {
        "local": NetworkConfig(
            name="local",
            rpc_url="http://127.0.0.1:8545",
            verification_api_key="test-key",
            verification_network="localhost",
            chain_id=31337,
        ),
        "private": NetworkConfig(
            name="private",
            rpc_url="http://127.0.0.1:8546",
            verification_api_key=None,
            verification_network="private",
        ),
    }


def make_settings(**overrides) -> Settings:
    """Settings with two test networks and a verification policy that never waits."""

    options = {
        "networks": make_networks(),
        "pool_size": 2,
        "job_timeout": 30.0,
        "shutdown_timeout": 5.0,
        "verification": VerificationPolicy(initial_delay=0.0, retry_delays=(0.0, 0.0), command_timeout=5.0),
        "default_chain": "local",
        "private_key": "0x" + "11" * 32,
    }
    options.update(overrides)

    return Settings(**options)


def make_payload(token_name: str = "Token", delay: float = 0.0, chain_name: str = "local", **extra):
    """A verify-only payload. Test tasks read `delay` from the first constructor argument."""

    payload = {
        "deployed_address": "0x" + "ab" * 20,
        "constructor_arguments": [delay],
        "template_number": 1,
        "token_name": token_name,
        "chain_name": chain_name,
    }
    payload.update(extra)
    return payload


@pytest.fixture
def settings() -> Settings:
    return make_settings()
