import json
from pathlib import Path

from web3 import Web3

ABI_DIR = Path(__file__).resolve().parent

abi_list = [
    "factory_abi",
    "sale_abi",
    "erc20_abi",
]


def get_abi(filename):
    with open(ABI_DIR / f"{filename}.json") as f:
        return json.load(f)


def get_abis():
    return {i: get_abi(i) for i in abi_list}


ABI_FILES = get_abis()

FACTORY_ABI = ABI_FILES["factory_abi"]
SALE_ABI = ABI_FILES["sale_abi"]
ERC20_ABI = ABI_FILES["erc20_abi"]


def event_signature(abi, event_name):
    """
    Canonical signature string, e.g. "Purchased(address,uint256,uint256)".
    """
    for item in abi:
        if item.get("type") == "event" and item.get("name") == event_name:
            types = ",".join(inp["type"] for inp in item.get("inputs", []))
            return f"{event_name}({types})"
    raise ValueError(f"Event {event_name} not found in ABI.")


def event_topic(abi, event_name):
    """0x-prefixed lowercase keccak of the event signature (topics[0])."""
    return "0x" + Web3.keccak(text=event_signature(abi, event_name)).hex().lower().removeprefix("0x")
