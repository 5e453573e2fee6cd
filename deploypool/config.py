"""Runtime configuration: the network table and dispatcher settings.

Values come from the environment, after `.env` and `.env.local` are loaded.
Settings are plain frozen dataclasses so they can be pickled into every worker.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
import os
import pathlib

from dotenv import load_dotenv
import psutil

from deploypool.constants import (
    DEFAULT_HOST,
    DEFAULT_JOB_TIMEOUT_SECONDS,
    DEFAULT_PORT,
    DEFAULT_SHUTDOWN_TIMEOUT_SECONDS,
    VERIFY_COMMAND,
    VERIFY_COMMAND_TIMEOUT_SECONDS,
    VERIFY_INITIAL_DELAY_SECONDS,
    VERIFY_RETRY_DELAYS_SECONDS,
)
from deploypool.exception import UnsupportedNetworkError


@dataclass(frozen=True)
class NetworkConfig:
    """Static description of one chain."""

    # the identifier jobs use to select this network
    name: str
    rpc_url: str | None
    # None means verification is handled out-of-band, so skip it
    verification_api_key: str | None
    # the network name the verification tool knows this chain by
    verification_network: str
    chain_id: int | None = None
    contracts: Mapping[str, str] = field(default_factory=dict)

    @property
    def verifies(self) -> bool:
        return bool(self.verification_api_key)


@dataclass(frozen=True)
class VerificationPolicy:
    """How, and how patiently, to run the source verification tool."""

    initial_delay: float = VERIFY_INITIAL_DELAY_SECONDS
    retry_delays: tuple[float, ...] = VERIFY_RETRY_DELAYS_SECONDS
    command: tuple[str, ...] = VERIFY_COMMAND
    command_timeout: float = VERIFY_COMMAND_TIMEOUT_SECONDS
    # directory the tool runs in (the hardhat project)
    cwd: str | None = None


@dataclass(frozen=True)
class Settings:
    networks: Mapping[str, NetworkConfig]
    pool_size: int
    job_timeout: float = DEFAULT_JOB_TIMEOUT_SECONDS
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT_SECONDS
    verification: VerificationPolicy = field(default_factory=VerificationPolicy)
    default_chain: str | None = None
    private_key: str | None = field(default=None, repr=False)
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    allowed_origins: tuple[str, ...] = ()

    def network(self, chain_name: str) -> NetworkConfig:
        """Look up a network by its identifier.

        @param chain_name: The chain identifier a job names
        @return: The network configuration
        @raise UnsupportedNetworkError: if the chain is not configured
        """

        try:
            return self.networks[chain_name]
        except KeyError:
            raise UnsupportedNetworkError(f"Unsupported network: {chain_name}") from None


def default_pool_size() -> int:
    return psutil.cpu_count(logical=True) or 1


def default_networks(env: Mapping[str, str]) -> dict[str, NetworkConfig]:
    bscscan_key = env.get("BSCSCAN_API_KEY") or None
    etherscan_key = env.get("ETHERSCAN_API_KEY") or None
    somnia_key = env.get("SOMNIA_API_KEY") or None

    networks = [
        NetworkConfig(
            name="bsc",
            rpc_url=env.get("BSC_RPC_URL", "https://bsc-dataseed.binance.org/"),
            verification_api_key=bscscan_key,
            verification_network="bsc",
            chain_id=56,
        ),
        NetworkConfig(
            name="bsc-testnet",
            rpc_url=env.get("BSC_TESTNET_RPC_URL", "https://data-seed-prebsc-1-s1.binance.org:8545"),
            verification_api_key=bscscan_key,
            verification_network="bscTestnet",
            chain_id=97,
        ),
        NetworkConfig(
            name="ethereum",
            rpc_url=env.get("ETH_RPC_URL"),
            verification_api_key=etherscan_key,
            verification_network="mainnet",
            chain_id=1,
        ),
        NetworkConfig(
            name="ethereum-testnet",
            rpc_url=env.get("ETH_TESTNET_RPC_URL"),
            verification_api_key=etherscan_key,
            verification_network="sepolia",
            chain_id=11155111,
        ),
        NetworkConfig(
            name="somnia-mainnet",
            rpc_url=env.get("SOMNIA_RPC_URL", "https://api.infra.mainnet.somnia.network/"),
            verification_api_key=somnia_key,
            verification_network="somniaMainnet",
            chain_id=5031,
            contracts={"WSTT": "0x046EDe9564A72571df6F5e44d0405360c0f4dCab"},
        ),
        NetworkConfig(
            name="somnia-testnet",
            rpc_url=env.get("SOMNIA_TESTNET_RPC_URL", "https://dream-rpc.somnia.network/"),
            verification_api_key=somnia_key,
            verification_network="somniaTestnet",
            chain_id=50312,
            contracts={"WSTT": "0xDa928F6A86497b3d3571fC4c2bAD04448Cc756A9"},
        ),
    ]

    return {network.name: network for network in networks}


def _parse_delays(text: str) -> tuple[float, ...]:
    return tuple(float(part) for part in text.split(",") if part.strip())


def load_env_files(root: pathlib.Path | None = None) -> None:
    """Load .env then .env.local (which wins) from `root` or the working directory."""

    root = root or pathlib.Path.cwd()
    load_dotenv(root / ".env")
    load_dotenv(root / ".env.local", override=True)


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build settings from environment variables.

    @param env: Mapping to read from; defaults to os.environ after loading .env files
    @return: The settings
    """

    if env is None:
        load_env_files()
        env = os.environ

    verification = VerificationPolicy(
        initial_delay=float(env.get("DEPLOYPOOL_VERIFY_INITIAL_DELAY", VERIFY_INITIAL_DELAY_SECONDS)),
        retry_delays=_parse_delays(env["DEPLOYPOOL_VERIFY_RETRY_DELAYS"])
        if "DEPLOYPOOL_VERIFY_RETRY_DELAYS" in env
        else VERIFY_RETRY_DELAYS_SECONDS,
        command=tuple(env["DEPLOYPOOL_VERIFY_COMMAND"].split())
        if env.get("DEPLOYPOOL_VERIFY_COMMAND")
        else VERIFY_COMMAND,
        command_timeout=float(env.get("DEPLOYPOOL_VERIFY_COMMAND_TIMEOUT", VERIFY_COMMAND_TIMEOUT_SECONDS)),
        cwd=env.get("HARDHAT_PROJECT_DIR") or None,
    )

    origins = tuple(
        origin.strip() for origin in env.get("ALLOWED_ORIGINS", "http://localhost:3008").split(",") if origin.strip()
    )

    return Settings(
        networks=default_networks(env),
        pool_size=int(env.get("DEPLOYPOOL_WORKERS") or default_pool_size()),
        job_timeout=float(env.get("DEPLOYPOOL_JOB_TIMEOUT", DEFAULT_JOB_TIMEOUT_SECONDS)),
        shutdown_timeout=float(env.get("DEPLOYPOOL_SHUTDOWN_TIMEOUT", DEFAULT_SHUTDOWN_TIMEOUT_SECONDS)),
        verification=verification,
        default_chain=env.get("CHAIN_NAME") or None,
        private_key=env.get("PRIVATE_KEY") or None,
        host=env.get("HOST", DEFAULT_HOST),
        port=int(env.get("PORT", DEFAULT_PORT)),
        allowed_origins=origins,
    )
