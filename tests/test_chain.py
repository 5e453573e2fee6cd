"""Tests for the web3 chain client's handling of constructor arguments"""

import asyncio
from unittest.mock import MagicMock

from conftest import make_networks
import pytest
from web3 import Web3

from deploypool.chain import Web3ChainClient, coerce_argument, coerce_constructor_arguments
from deploypool.exception import DeploymentError

TOKEN_ABI = [
    {
        "type": "constructor",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "supply", "type": "uint256", "internalType": "uint256"},
            {"name": "name", "type": "string", "internalType": "string"},
            {"name": "mintable", "type": "bool", "internalType": "bool"},
            {"name": "owner", "type": "address", "internalType": "address"},
        ],
    }
]
OWNER = "0x" + "ab" * 20
TX_HASH = b"\x12" * 32


def test_string_arguments_encode_against_the_abi():
    """Numeric strings sent over HTTP must still encode for uint parameters"""

    arguments = coerce_constructor_arguments(TOKEN_ABI, ["1000000", "My Token", "true", OWNER])

    assert arguments == [1000000, "My Token", True, Web3.to_checksum_address(OWNER)]

    contract = Web3().eth.contract(abi=TOKEN_ABI, bytecode="0x6000")
    data = contract.constructor(*arguments)._encode_data_in_transaction()

    assert data.startswith("0x6000")
    assert hex(1000000)[2:] in data


def test_coerce_argument():
    assert coerce_argument("uint8", "18") == 18
    assert coerce_argument("int256", "-5") == -5
    assert coerce_argument("uint256", "0x10") == 16
    assert coerce_argument("uint256", 18.0) == 18
    assert coerce_argument("uint256", 7) == 7
    assert coerce_argument("bool", "False") is False
    assert coerce_argument("bool", True) is True
    assert coerce_argument("string", "100") == "100"
    assert coerce_argument("uint256[]", "1,2") == "1,2"


def test_unreadable_argument_names_the_parameter():
    with pytest.raises(DeploymentError, match="supply"):
        coerce_constructor_arguments(TOKEN_ABI, ["a lot", "My Token", True, OWNER])

    with pytest.raises(DeploymentError, match="mintable"):
        coerce_constructor_arguments(TOKEN_ABI, ["1", "My Token", "maybe", OWNER])


def test_arity_mismatch_is_left_to_web3():
    assert coerce_constructor_arguments(TOKEN_ABI, ["1"]) == ["1"]
    assert coerce_constructor_arguments([], []) == []


def test_deploy_contract_passes_coerced_arguments():
    client = Web3ChainClient(make_networks()["local"], "0x" + "11" * 32)
    client.w3 = MagicMock()
    client.account = MagicMock(address=OWNER)

    contract = client.w3.eth.contract.return_value
    client.w3.eth.send_raw_transaction.return_value = TX_HASH
    client.w3.eth.wait_for_transaction_receipt.return_value = {"status": 1, "contractAddress": OWNER}

    deployed = asyncio.run(client.deploy_contract(TOKEN_ABI, "0x6000", ["1000000", "My Token", "false", OWNER]))

    contract.constructor.assert_called_once_with(1000000, "My Token", False, Web3.to_checksum_address(OWNER))
    assert deployed.address == OWNER
    assert deployed.tx_hash == Web3.to_hex(TX_HASH)


def test_reverted_deployment():
    client = Web3ChainClient(make_networks()["local"], "0x" + "11" * 32)
    client.w3 = MagicMock()
    client.account = MagicMock(address=OWNER)
    client.w3.eth.send_raw_transaction.return_value = TX_HASH
    client.w3.eth.wait_for_transaction_receipt.return_value = {"status": 0, "contractAddress": None}

    with pytest.raises(DeploymentError, match="reverted"):
        asyncio.run(client.deploy_contract(TOKEN_ABI, "0x6000", ["1", "My Token", True, OWNER]))
