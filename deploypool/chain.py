"""Chain RPC access: deploying compiled contracts and reading balances."""

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from eth_account import Account
from web3 import Web3

from deploypool.config import NetworkConfig
from deploypool.constants import DEPLOY_RECEIPT_TIMEOUT_SECONDS
from deploypool.exception import DeploymentError
from deploypool.types import ConstructorArgument
from deploypool.utils.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class DeployedContract:
    address: str
    tx_hash: str


TRUE_STRINGS = ("true", "1", "yes")
FALSE_STRINGS = ("false", "0", "no")


def coerce_argument(abi_type: str, argument: ConstructorArgument) -> Any:
    """Convert a JSON-friendly argument to what web3's strict ABI encoder expects
    for `abi_type`. Callers send numbers as strings to keep uint256 values exact."""

    if abi_type.endswith("]") or abi_type.startswith("tuple"):
        return argument

    if abi_type.startswith(("uint", "int")):
        if isinstance(argument, str):
            return int(argument.strip(), 0)
        if isinstance(argument, float) and argument.is_integer():
            return int(argument)
        return argument

    if abi_type == "bool" and isinstance(argument, str):
        lowered = argument.strip().lower()
        if lowered in TRUE_STRINGS:
            return True
        if lowered in FALSE_STRINGS:
            return False
        raise ValueError(f"Cannot read {argument!r} as a bool")

    if abi_type == "address" and isinstance(argument, str):
        return Web3.to_checksum_address(argument)

    return argument


def coerce_constructor_arguments(
    abi: list[dict[str, Any]], constructor_arguments: Sequence[ConstructorArgument]
) -> list[Any]:
    """Coerce each argument against the constructor's declared input types.

    @param abi: The contract ABI
    @param constructor_arguments: Arguments as the caller sent them
    @return: Arguments ready for `contract.constructor`
    @raise DeploymentError: if an argument cannot be read as its declared type
    """

    constructor = next((entry for entry in abi if entry.get("type") == "constructor"), None)
    inputs = constructor.get("inputs", []) if constructor else []

    # let web3 report an arity mismatch itself
    if len(inputs) != len(constructor_arguments):
        return list(constructor_arguments)

    coerced = []
    for param, argument in zip(inputs, constructor_arguments):
        try:
            coerced.append(coerce_argument(param["type"], argument))
        except ValueError as err:
            name = param.get("name") or param["type"]
            raise DeploymentError(f"Invalid constructor argument {name}: {err}") from err

    return coerced


class ChainClient(Protocol):
    """What the deployment task needs from a chain."""

    async def deploy_contract(
        self,
        abi: list[dict[str, Any]],
        bytecode: str,
        constructor_arguments: Sequence[ConstructorArgument],
    ) -> DeployedContract: ...

    async def get_balance(self, address: str) -> int: ...


class Web3ChainClient:
    """A web3.py client signing with a single deployer key.

    web3's HTTP provider is synchronous, so calls run in a thread to keep the
    worker's event loop free.
    """

    def __init__(self, network: NetworkConfig, private_key: str | None) -> None:
        if not network.rpc_url:
            raise DeploymentError(f"No RPC endpoint configured for {network.name}")
        if not private_key:
            raise DeploymentError("PRIVATE_KEY is not configured; cannot deploy")

        self.network = network
        self.w3 = Web3(Web3.HTTPProvider(network.rpc_url))
        self.account = Account.from_key(private_key)

    async def deploy_contract(
        self,
        abi: list[dict[str, Any]],
        bytecode: str,
        constructor_arguments: Sequence[ConstructorArgument],
    ) -> DeployedContract:
        return await asyncio.to_thread(
            self._deploy, abi, bytecode, coerce_constructor_arguments(abi, constructor_arguments)
        )

    async def get_balance(self, address: str) -> int:
        return await asyncio.to_thread(self.w3.eth.get_balance, Web3.to_checksum_address(address))

    def _deploy(self, abi: list[dict[str, Any]], bytecode: str, constructor_arguments: list) -> DeployedContract:
        contract = self.w3.eth.contract(abi=abi, bytecode=bytecode)

        tx = contract.constructor(*constructor_arguments).build_transaction(
            {
                "from": self.account.address,
                "nonce": self.w3.eth.get_transaction_count(self.account.address),
                "chainId": self.network.chain_id or self.w3.eth.chain_id,
            }
        )

        signed_tx = self.account.sign_transaction(tx)
        tx_hash = self.w3.eth.send_raw_transaction(signed_tx.raw_transaction)
        logger.info("Deployment transaction %s sent to %s", Web3.to_hex(tx_hash), self.network.name)

        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=DEPLOY_RECEIPT_TIMEOUT_SECONDS)

        if receipt["status"] != 1 or not receipt["contractAddress"]:
            raise DeploymentError(f"Deployment transaction {Web3.to_hex(tx_hash)} reverted")

        return DeployedContract(address=receipt["contractAddress"], tx_hash=Web3.to_hex(tx_hash))
