import asyncio

import pytest
from eth_abi import encode
from hexbytes import HexBytes
from web3 import Web3

import poller as poller_module
from abi.get_abis import FACTORY_ABI, SALE_ABI, event_topic
from exceptions import ChainReadError, MalformedEventError
from poller import AsyncSalePoller
from store import queries
from store.models import IndexerCheckpoint, SaleActivity, SaleConfig, TokenDeployment

TOKEN = "0x" + "aa" * 20
OTHER_TOKEN = "0x" + "bb" * 20
DEPLOYER = "0x" + "11" * 20
BENEFICIARY = "0x" + "22" * 20
BUYER = "0x" + "33" * 20
FACTORY = "0x" + "ff" * 20


def raw_log(abi, name, address, block, log_index=0, indexed=(), values=()):
    """Undecoded log as returned by eth_getLogs."""
    event = next(i for i in abi if i.get("type") == "event" and i["name"] == name)
    types = [i["type"] for i in event["inputs"] if not i["indexed"]]
    return {
        "address": Web3.to_checksum_address(address),
        "topics": [HexBytes(event_topic(abi, name))] + [HexBytes(bytes(12) + bytes.fromhex(a[2:])) for a in indexed],
        "data": HexBytes(encode(types, list(values))),
        "blockNumber": block,
        "logIndex": log_index,
        "transactionHash": HexBytes(block.to_bytes(16, "big") + log_index.to_bytes(16, "big")),
        "transactionIndex": 0,
        "blockHash": HexBytes(bytes([block % 256]) * 32),
        "removed": False,
    }


def deployed_log(block=10, token=TOKEN):
    return raw_log(
        FACTORY_ABI, "RefundableTokenDeployed", FACTORY, block,
        indexed=(token, DEPLOYER, BENEFICIARY), values=("Test Token", "TST", 10 ** 24),
    )


def sale_created_log(block=15, token=TOKEN, log_index=0):
    return raw_log(SALE_ABI, "SaleCreated", token, block, log_index, values=(1000, 50000, 20, 120, 120, 320, 8000))


def purchased_log(block=30, token=TOKEN, log_index=0, tokens=300, funding=15_000_000):
    return raw_log(SALE_ABI, "Purchased", token, block, log_index, indexed=(BUYER,), values=(tokens, funding))


def refunded_log(block=40, token=TOKEN, log_index=0):
    return raw_log(SALE_ABI, "Refunded", token, block, log_index, indexed=(BUYER,), values=(100, 5_000_000))


class LogReader:
    """Serves eth_getLogs from a fixed list, filtered like a node would."""

    def __init__(self, logs, head=50, failures=0):
        self.logs = logs
        self.head = head
        self.failures = failures
        self.requests = []

    async def get_block_number(self):
        return self.head

    async def get_logs(self, params):
        self.requests.append(params)
        if self.failures:
            self.failures -= 1
            raise ChainReadError("getLogs", TimeoutError("timed out"))
        addresses = params["address"]
        if isinstance(addresses, str):
            addresses = [addresses]
        wanted = {a.lower() for a in addresses}
        return [
            lg for lg in self.logs
            if params["fromBlock"] <= lg["blockNumber"] <= params["toBlock"]
            and lg["address"].lower() in wanted
        ]


def _poller(reader, **kwargs):
    kwargs.setdefault("start_from_block", 1)
    return AsyncSalePoller(reader, FACTORY, **kwargs)


@pytest.fixture
def sale_logs():
    # shuffled on purpose; the node returns per-request order only
    return [refunded_log(), purchased_log(), sale_created_log(), deployed_log()]


async def test_indexes_factory_and_sale_events(db, sale_logs):
    stats = await _poller(LogReader(sale_logs)).fetch_logs(chunk_size=2000)

    assert (stats.inserted, stats.duplicates, stats.dropped) == (4, 0, 0)
    dep = await queries.get_deployment(TOKEN)
    assert (dep.name, dep.symbol, dep.deployer) == ("Test Token", "TST", DEPLOYER)
    cfg = await queries.current_sale_config(TOKEN)
    assert (cfg.sale_amount, cfg.refundable_bps_at_start) == ("1000", 8000)
    activity = await queries.list_sale_activity(TOKEN)
    assert [(a.kind, a.account) for a in activity] == [
        (SaleActivity.KIND_PURCHASE, BUYER),
        (SaleActivity.KIND_REFUND, BUYER),
    ]


async def test_checkpoint_advances_per_chunk(db, sale_logs):
    reader = LogReader(sale_logs)
    poller = _poller(reader)
    await poller.fetch_logs(chunk_size=20)

    cp = await IndexerCheckpoint.get(name="sales")
    assert cp.next_block == 51
    assert poller.from_block == 51
    # factory request per chunk plus a sale request once the token is known
    ranges = [(r["fromBlock"], r["toBlock"]) for r in reader.requests]
    assert ranges == [(1, 20), (1, 20), (21, 40), (21, 40), (41, 50), (41, 50)]
    assert await SaleActivity.all().count() == 2


async def test_resumes_from_checkpoint(db, sale_logs):
    await IndexerCheckpoint.create(name="sales", next_block=25)
    reader = LogReader(sale_logs)
    await TokenDeployment.create(
        id="seed", token_address=TOKEN, deployer=DEPLOYER, beneficiary=BENEFICIARY,
        name="Test Token", symbol="TST", max_supply="1", block_number=10, tx_hash="0x01",
    )
    poller = _poller(reader)
    await poller.fetch_logs()

    assert poller.tracked_tokens == {TOKEN}
    assert reader.requests[0]["fromBlock"] == 25
    assert await SaleConfig.all().count() == 0
    assert await SaleActivity.all().count() == 2


async def test_fresh_start_looks_back_from_head(db):
    poller = AsyncSalePoller(LogReader([], head=50_000), FACTORY, start_blocks_ago=9999)
    await poller.load_state()
    assert poller.from_block == 40_001


async def test_reprocess_replays_as_duplicates(db, sale_logs):
    poller = _poller(LogReader(sale_logs))
    await poller.fetch_logs()
    before = await SaleActivity.all().count()

    await poller.reprocess_from(1)
    stats = await poller.fetch_logs()

    assert (stats.inserted, stats.duplicates) == (0, 4)
    assert await SaleActivity.all().count() == before


async def test_untracked_contracts_are_ignored(db, sale_logs):
    logs = sale_logs + [purchased_log(block=31, token=OTHER_TOKEN)]
    await _poller(LogReader(logs)).fetch_logs()
    assert await SaleActivity.filter(token_address=OTHER_TOKEN).count() == 0


async def test_logs_are_projected_in_chain_order(db):
    logs = [
        deployed_log(block=10),
        purchased_log(block=30, log_index=2, tokens=2, funding=100_000),
        sale_created_log(block=30, log_index=0),
        purchased_log(block=30, log_index=1, tokens=1, funding=50_000),
    ]
    poller = _poller(LogReader(logs))
    decoded = await poller._fetch_chunk(1, 50)

    assert [(name, evt["logIndex"]) for evt, _, name in decoded] == [
        ("RefundableTokenDeployed", 0),
        ("SaleCreated", 0),
        ("Purchased", 1),
        ("Purchased", 2),
    ]
    assert decoded[3][0]["args"]["tokensPurchased"] == 2


async def test_transient_failures_are_retried(db, sale_logs, monkeypatch):
    waits = []

    async def no_wait(seconds):
        waits.append(seconds)

    monkeypatch.setattr(poller_module.asyncio, "sleep", no_wait)
    stats = await _poller(LogReader(sale_logs, failures=2)).fetch_logs(max_retries=3)

    assert stats.inserted == 4
    assert waits == [2, 4]


async def test_gives_up_after_max_retries(db, sale_logs, monkeypatch):
    async def no_wait(seconds):
        return None

    monkeypatch.setattr(poller_module.asyncio, "sleep", no_wait)
    with pytest.raises(ChainReadError):
        await _poller(LogReader(sale_logs, failures=10)).fetch_logs(max_retries=2)
    assert await IndexerCheckpoint.get_or_none(name="sales") is None


async def test_undecodable_log_halts_without_checkpoint(db):
    broken = purchased_log(block=30)
    broken["data"] = HexBytes(b"\x01" * 8)
    with pytest.raises(MalformedEventError):
        await _poller(LogReader([deployed_log(), broken])).fetch_logs()
    assert await IndexerCheckpoint.get_or_none(name="sales") is None
    assert await TokenDeployment.all().count() == 0


async def test_polling_survives_chain_outage(db, sale_logs, monkeypatch):
    waits = []

    async def stop_after_two_rounds(seconds):
        if len(waits) == 7:
            raise asyncio.CancelledError()
        waits.append(seconds)

    monkeypatch.setattr(poller_module.asyncio, "sleep", stop_after_two_rounds)
    reader = LogReader(sale_logs, failures=10 ** 6)

    with pytest.raises(asyncio.CancelledError):
        await _poller(reader).run_polling(sleep_time=7)

    # backoff inside fetch_logs, then the poll interval, then a second round
    assert waits == [2, 4, 8, 7, 2, 4, 8]
    assert len(reader.requests) == 8
    assert await IndexerCheckpoint.get_or_none(name="sales") is None


async def test_polling_halts_on_malformed_log(db, monkeypatch):
    async def no_wait(seconds):
        return None

    monkeypatch.setattr(poller_module.asyncio, "sleep", no_wait)
    broken = purchased_log(block=30)
    broken["data"] = HexBytes(b"\x01" * 8)

    with pytest.raises(MalformedEventError):
        await _poller(LogReader([deployed_log(), broken])).run_polling(sleep_time=0)
