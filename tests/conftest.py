import pytest

from exceptions import ChainReadError
from store.db import close_db, init_db

TOKEN = "0x" + "aa" * 20
OTHER_TOKEN = "0x" + "bb" * 20
DEPLOYER = "0x" + "11" * 20
BENEFICIARY = "0x" + "22" * 20
BUYER = "0x" + "33" * 20
FACTORY = "0x" + "ff" * 20
FUNDING_TOKEN = "0x" + "cc" * 20


@pytest.fixture
async def db():
    await init_db("sqlite://:memory:")
    yield
    await close_db()


@pytest.fixture
def make_log():
    """Decoded-log dict shaped like web3's process_log output."""
    def _make(args, address=TOKEN, block=1, log_index=0, tx_hash=None, **extra):
        log = {
            "address": address,
            "blockNumber": block,
            "logIndex": log_index,
            "transactionHash": tx_hash or f"0x{block:032x}{log_index:032x}",
            "args": args,
        }
        log.update(extra)
        return log
    return _make


@pytest.fixture
def deployment_args():
    def _args(token=TOKEN, name="Test Token", symbol="TST", max_supply=10 ** 24):
        return {
            "token": token,
            "deployer": DEPLOYER,
            "beneficiary": BENEFICIARY,
            "name": name,
            "symbol": symbol,
            "maxSupply": max_supply,
        }
    return _args


@pytest.fixture
def sale_args():
    def _args(sale_amount=1000, purchase_price=50000, start=20, end=120, **decay):
        args = {
            "saleAmount": sale_amount,
            "purchasePrice": purchase_price,
            "saleStartBlock": start,
            "saleEndBlock": end,
        }
        args.update(decay)
        return args
    return _args


class FakeReader:
    """Chain reader test double: canned values, scripted failures."""

    def __init__(self, block=35, views=None, fail=(), events=None):
        self.block = block
        self.views = dict(views or {})
        self.fail = set(fail)
        self.events = list(events or [])
        self.calls = []
        self.closed = False

    async def close(self):
        self.closed = True

    async def get_block_number(self):
        self.calls.append(("getBlockNumber",))
        if "getBlockNumber" in self.fail:
            raise ChainReadError("getBlockNumber", TimeoutError("timed out"))
        return self.block

    async def read_contract(self, address, function, args=(), abi=None, timeout=None):
        self.calls.append((address.lower(), function))
        if function in self.fail:
            raise ChainReadError(f"readContract {function}", TimeoutError("timed out"))
        if (address.lower(), function) in self.views:
            return self.views[(address.lower(), function)]
        if function in self.views:
            return self.views[function]
        raise ChainReadError(f"readContract {function}", LookupError("no canned value"))

    async def get_contract_events(self, address, event_name, from_block, to_block="latest", abi=None):
        self.calls.append((address.lower(), f"events:{event_name}", from_block))
        if f"events:{event_name}" in self.fail:
            raise ChainReadError(f"getContractEvents {event_name}", TimeoutError("timed out"))
        return [
            e for e in self.events
            if e["event"] == event_name and e["address"].lower() == address.lower() and e["blockNumber"] >= from_block
        ]


@pytest.fixture
def fake_reader():
    return FakeReader
