from __future__ import annotations
import logging
from dataclasses import dataclass
from enum import Enum
from collections.abc import Mapping
from typing import Any, Optional, Union

from web3 import Web3

from exceptions import MalformedEventError, UnresolvableSourceError

logger = logging.getLogger("normalizer")


class ContractKind(str, Enum):
    FACTORY = "Factory"
    SALE = "Sale"


# ---------------------------------------------------------------------
# Domain events
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class TokenDeployed:
    token: str
    deployer: str
    beneficiary: str
    name: str
    symbol: str
    max_supply: int
    block_number: int
    tx_hash: str
    event_id: str
    log_index: int = 0


@dataclass(frozen=True)
class SaleCreated:
    token: str
    sale_amount: int
    purchase_price: int
    sale_start_block: int
    sale_end_block: int
    block_number: int
    tx_hash: str
    event_id: str
    log_index: int = 0
    refundable_decay_start_block: Optional[int] = None
    refundable_decay_end_block: Optional[int] = None
    refundable_bps_at_start: Optional[int] = None


@dataclass(frozen=True)
class Purchased:
    token: str
    tokens_purchased: int
    funding_amount_spent: int
    block_number: int
    tx_hash: str
    event_id: str
    log_index: int = 0
    account: Optional[str] = None


@dataclass(frozen=True)
class Refunded:
    token: str
    token_amount: int
    funding_token_amount: int
    block_number: int
    tx_hash: str
    event_id: str
    log_index: int = 0
    account: Optional[str] = None


DomainEvent = Union[TokenDeployed, SaleCreated, Purchased, Refunded]

EVENTS_BY_KIND = {
    ContractKind.FACTORY: ("RefundableTokenDeployed",),
    ContractKind.SALE: ("SaleCreated", "Purchased", "Refunded"),
}


# ---------------------------------------------------------------------
# Access helpers (work with web3 AttributeDict or plain dict)
# ---------------------------------------------------------------------
def _evt_get(e: Any, key: str, default=None):
    try:
        return e[key]
    except Exception:
        return getattr(e, key, default)


def _args_get(e: Any, key: str, default=None):
    a = _evt_get(e, "args", {})
    if a is None:
        return default
    if isinstance(a, Mapping):
        return a.get(key, default)
    return getattr(a, key, default)


def hex_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.hex()
    value = str(value).lower()
    return value if value.startswith("0x") else "0x" + value


def normalize_address(value: Any) -> Optional[str]:
    """Lowercase 0x address, or None if it isn't one."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)) and len(value) == 20:
        value = "0x" + value.hex()
    value = str(value)
    if not Web3.is_address(value):
        return None
    return value.lower()


def _source_address(raw: Any) -> str:
    addr = normalize_address(_evt_get(raw, "address"))
    if addr is None:
        raise UnresolvableSourceError(f"log has no resolvable source address: {_evt_get(raw, 'address')!r}")
    return addr


class _Fields:
    """Required-field extraction for one log; any failure is fatal."""

    def __init__(self, raw: Any, event_name: str):
        self.raw = raw
        self.event_name = event_name
        self.event_id: Optional[str] = None

    def fail(self, message: str):
        raise MalformedEventError(f"{self.event_name}: {message}", self.event_name, self.event_id)

    def position(self):
        block = _evt_get(self.raw, "blockNumber")
        tx_hash = hex_str(_evt_get(self.raw, "transactionHash"))
        log_index = _evt_get(self.raw, "logIndex")
        if block is None:
            self.fail("missing blockNumber")
        if not tx_hash:
            self.fail("missing transactionHash")
        if log_index is None:
            self.fail("missing logIndex")
        try:
            block = int(block)
            log_index = int(log_index)
        except (TypeError, ValueError):
            self.fail(f"bad log position block={block!r} logIndex={log_index!r}")
        explicit = _evt_get(self.raw, "eventId") or _evt_get(self.raw, "id")
        self.event_id = str(explicit) if explicit else f"{tx_hash}-{log_index}"
        return block, tx_hash, log_index

    def uint(self, key: str, required: bool = True) -> Optional[int]:
        value = _args_get(self.raw, key)
        if value is None:
            if required:
                self.fail(f"missing argument '{key}'")
            return None
        if isinstance(value, bool):
            self.fail(f"argument '{key}' is not an integer: {value!r}")
        try:
            value = int(value)
        except (TypeError, ValueError):
            self.fail(f"argument '{key}' is not an integer: {value!r}")
        if value < 0:
            self.fail(f"argument '{key}' is negative: {value}")
        return value

    def address(self, key: str, required: bool = True) -> Optional[str]:
        value = _args_get(self.raw, key)
        if value is None and not required:
            return None
        addr = normalize_address(value)
        if addr is None:
            self.fail(f"argument '{key}' is not an address: {value!r}")
        return addr

    def text(self, key: str) -> str:
        value = _args_get(self.raw, key)
        if value is None:
            self.fail(f"missing argument '{key}'")
        if isinstance(value, (bytes, bytearray)):
            value = value.decode("utf-8", errors="replace").rstrip("\x00")
        return str(value)


# ---------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------
def _token_deployed(f: _Fields, source: str) -> TokenDeployed:
    block, tx_hash, log_index = f.position()
    return TokenDeployed(
        token=f.address("token"),
        deployer=f.address("deployer"),
        beneficiary=f.address("beneficiary"),
        name=f.text("name"),
        symbol=f.text("symbol"),
        max_supply=f.uint("maxSupply"),
        block_number=block,
        tx_hash=tx_hash,
        event_id=f.event_id,
        log_index=log_index,
    )


def _sale_created(f: _Fields, source: str) -> SaleCreated:
    block, tx_hash, log_index = f.position()
    return SaleCreated(
        token=source,
        sale_amount=f.uint("saleAmount"),
        purchase_price=f.uint("purchasePrice"),
        sale_start_block=f.uint("saleStartBlock"),
        sale_end_block=f.uint("saleEndBlock"),
        block_number=block,
        tx_hash=tx_hash,
        event_id=f.event_id,
        log_index=log_index,
        refundable_decay_start_block=f.uint("refundableDecayStartBlock", required=False),
        refundable_decay_end_block=f.uint("refundableDecayEndBlock", required=False),
        refundable_bps_at_start=f.uint("refundableBpsAtStart", required=False),
    )


def _purchased(f: _Fields, source: str) -> Purchased:
    block, tx_hash, log_index = f.position()
    return Purchased(
        token=source,
        tokens_purchased=f.uint("tokensPurchased"),
        funding_amount_spent=f.uint("fundingAmountSpent"),
        block_number=block,
        tx_hash=tx_hash,
        event_id=f.event_id,
        log_index=log_index,
        account=f.address("buyer", required=False),
    )


def _refunded(f: _Fields, source: str) -> Refunded:
    block, tx_hash, log_index = f.position()
    return Refunded(
        token=source,
        token_amount=f.uint("tokenAmount"),
        funding_token_amount=f.uint("fundingTokenAmount"),
        block_number=block,
        tx_hash=tx_hash,
        event_id=f.event_id,
        log_index=log_index,
        account=f.address("receiver", required=False),
    )


_BUILDERS = {
    (ContractKind.FACTORY, "RefundableTokenDeployed"): _token_deployed,
    (ContractKind.SALE, "SaleCreated"): _sale_created,
    (ContractKind.SALE, "Purchased"): _purchased,
    (ContractKind.SALE, "Refunded"): _refunded,
}


def normalize(raw: Any, contract_kind: ContractKind | str, event_name: str) -> Optional[DomainEvent]:
    """
    Map one decoded log to a domain event.

    Returns None (and logs a warning) when the log has no resolvable source
    address. Raises MalformedEventError for anything else that doesn't fit
    the factory/sale ABIs.
    """
    try:
        kind = ContractKind(contract_kind)
    except ValueError:
        raise MalformedEventError(f"unknown contract kind {contract_kind!r}", event_name)
    builder = _BUILDERS.get((kind, event_name))
    if builder is None:
        raise MalformedEventError(f"unexpected event {event_name!r} for {kind.value} contract", event_name)

    try:
        source = _source_address(raw)
    except UnresolvableSourceError as e:
        logger.warning(
            f"dropping {event_name} tx={hex_str(_evt_get(raw, 'transactionHash'))} "
            f"log={_evt_get(raw, 'logIndex')}: {e}"
        )
        return None

    return builder(_Fields(raw, event_name), source)
