"""
Sale aggregation engine.

Two strategies over the projected tables:

A. activity fold (sale listing): sums purchase/refund rows against the
   current SaleConfig and the live block number.
B. authoritative balances (stats cards): trusts the sale contract's view
   functions for current holdings; the refunded figure still comes from
   Refunded events because the contract has no cumulative view for it.

All raw amounts are ints. Floats appear only in the final percentage.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from abi.get_abis import ERC20_ABI
from exceptions import AggregationError, ChainReadError, SaleIndexerError
from settings import AUX_READ_TIMEOUT_SECONDS, AVG_BLOCK_TIME_SECONDS
from store import queries
from store.models import SaleActivity, SaleConfig, TokenDeployment

logger = logging.getLogger("aggregator")

SECONDS_PER_DAY = 86_400
BPS_DENOMINATOR = 10_000

STATUS_UPCOMING = "upcoming"
STATUS_ACTIVE = "active"
STATUS_ENDED = "ended"

DECAY_PENDING = "pending"
DECAY_DECAYING = "decaying"
DECAY_EXPIRED = "expired"


# ---------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class ActivityTotals:
    tokens_purchased: int = 0
    tokens_refunded: int = 0
    funding_spent: int = 0
    funding_refunded: int = 0
    purchases: int = 0
    refunds: int = 0


def fold_activity(activities: Iterable[SaleActivity]) -> ActivityTotals:
    tp = tr = fs = fr = n_p = n_r = 0
    for a in activities:
        if a.kind == SaleActivity.KIND_PURCHASE:
            tp += int(a.token_amount)
            fs += int(a.funding_amount)
            n_p += 1
        elif a.kind == SaleActivity.KIND_REFUND:
            tr += int(a.token_amount)
            fr += int(a.funding_amount)
            n_r += 1
    return ActivityTotals(tp, tr, fs, fr, n_p, n_r)


def percent_remaining(remaining: int, sale_amount: int) -> Optional[float]:
    """Two-decimal percentage from an integer ratio scaled by 10,000."""
    if sale_amount <= 0:
        return None
    return (remaining * BPS_DENOMINATOR // sale_amount) / 100


def closing_in_days(blocks_remaining: int, sale_end_block: int, block_time_seconds: int) -> Optional[int]:
    if sale_end_block <= 0:
        return None
    return int(-(-(blocks_remaining * block_time_seconds) // SECONDS_PER_DAY))


def sale_status(config: SaleConfig, block: int) -> str:
    if block < config.sale_start_block:
        return STATUS_UPCOMING
    if block <= config.sale_end_block:
        return STATUS_ACTIVE
    return STATUS_ENDED


@dataclass(frozen=True)
class RefundDecay:
    phase: str
    refundable_bps: int
    decay_start_block: int
    decay_end_block: int

    @property
    def refundable_percent(self) -> float:
        return self.refundable_bps / 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase,
            "refundableBps": self.refundable_bps,
            "refundablePercent": self.refundable_percent,
            "decayStartBlock": str(self.decay_start_block),
            "decayEndBlock": str(self.decay_end_block),
        }


def refund_decay_state(config: SaleConfig, block: int) -> Optional[RefundDecay]:
    """
    Estimated refundable share at `block`: full until decay start, linear
    down to zero at decay end. The contract stays authoritative.
    """
    if not config.has_decay_schedule:
        return None
    start = config.refundable_decay_start_block
    end = config.refundable_decay_end_block
    bps0 = config.refundable_bps_at_start
    if block < start:
        return RefundDecay(DECAY_PENDING, bps0, start, end)
    if block >= end:
        return RefundDecay(DECAY_EXPIRED, 0, start, end)
    bps = bps0 * (end - block) // (end - start)
    return RefundDecay(DECAY_DECAYING, bps, start, end)


def quote_refund(token_amount: int, purchase_price: int, token_decimals: int = 18) -> int:
    """Undecayed funding amount returned for `token_amount` sale tokens."""
    return token_amount * purchase_price // 10 ** token_decimals


def reconcile_raised(funding_tokens_held: int, total_funds_claimed: int, refunded: int) -> int:
    return funding_tokens_held + total_funds_claimed + refunded


# ---------------------------------------------------------------------
# Strategy A
# ---------------------------------------------------------------------
@dataclass
class SaleSummary:
    token: str
    sale_amount: int
    purchase_price: int
    sale_start_block: int
    sale_end_block: int
    tokens_purchased: int
    tokens_refunded: int
    funding_spent: int
    funding_refunded: int
    tokens_sold: int
    funding_raised: int
    remaining_tokens: int
    percent_tokens_remaining: Optional[float]
    blocks_remaining: int
    closing_in_days: Optional[int]
    latest_block_number: int
    status: str
    # pre-clamp deltas, negative when refunds outrun recorded purchases
    tokens_sold_delta: int
    funding_raised_delta: int
    config_block_number: int
    refund_decay: Optional[RefundDecay] = None
    config_error: Optional[str] = None

    @property
    def clamped(self) -> bool:
        return self.tokens_sold_delta < 0 or self.funding_raised_delta < 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "saleAmount": str(self.sale_amount),
            "purchasePrice": str(self.purchase_price),
            "saleStartBlock": str(self.sale_start_block),
            "saleEndBlock": str(self.sale_end_block),
            "tokensSold": str(self.tokens_sold),
            "fundingRaised": str(self.funding_raised),
            "remainingTokens": str(self.remaining_tokens),
            "percentTokensRemaining": self.percent_tokens_remaining,
            "blocksRemaining": str(self.blocks_remaining),
            "closingInDays": self.closing_in_days,
            "status": self.status,
            "tokensSoldDelta": str(self.tokens_sold_delta),
            "fundingRaisedDelta": str(self.funding_raised_delta),
            "refundDecay": self.refund_decay.to_dict() if self.refund_decay else None,
            "configError": self.config_error,
        }


def summarize_sale(
    config: SaleConfig,
    activities: Iterable[SaleActivity],
    latest_block_number: int,
    block_time_seconds: int = AVG_BLOCK_TIME_SECONDS,
) -> SaleSummary:
    totals = fold_activity(activities)
    sale_amount = int(config.sale_amount)

    sold_delta = totals.tokens_purchased - totals.tokens_refunded
    raised_delta = totals.funding_spent - totals.funding_refunded
    if sold_delta < 0 or raised_delta < 0:
        logger.warning(
            f"{config.token_address}: refunds exceed purchases "
            f"(tokens {sold_delta}, funding {raised_delta}); clamping to 0"
        )
    tokens_sold = max(0, sold_delta)
    funding_raised = max(0, raised_delta)
    remaining = max(0, sale_amount - tokens_sold)
    blocks_remaining = max(0, config.sale_end_block - latest_block_number)

    config_error = None
    if config.sale_start_block > config.sale_end_block:
        config_error = (
            f"sale start block {config.sale_start_block} is after "
            f"end block {config.sale_end_block}"
        )

    return SaleSummary(
        token=config.token_address,
        sale_amount=sale_amount,
        purchase_price=int(config.purchase_price),
        sale_start_block=config.sale_start_block,
        sale_end_block=config.sale_end_block,
        tokens_purchased=totals.tokens_purchased,
        tokens_refunded=totals.tokens_refunded,
        funding_spent=totals.funding_spent,
        funding_refunded=totals.funding_refunded,
        tokens_sold=tokens_sold,
        funding_raised=funding_raised,
        remaining_tokens=remaining,
        percent_tokens_remaining=percent_remaining(remaining, sale_amount),
        blocks_remaining=blocks_remaining,
        closing_in_days=closing_in_days(blocks_remaining, config.sale_end_block, block_time_seconds),
        latest_block_number=latest_block_number,
        status=sale_status(config, latest_block_number),
        tokens_sold_delta=sold_delta,
        funding_raised_delta=raised_delta,
        config_block_number=config.block_number,
        refund_decay=refund_decay_state(config, latest_block_number),
        config_error=config_error,
    )


# ---------------------------------------------------------------------
# Strategy B
# ---------------------------------------------------------------------
@dataclass
class SalesStatsRow:
    token: str
    deployment_id: str
    name: str
    symbol: str
    remaining_tokens_for_sale: int
    funding_token: str
    funding_token_symbol: Optional[str]  # None = unavailable
    funding_token_decimals: Optional[int]
    funding_tokens_held: int
    claimed: int
    refunded: int
    raised: int
    # gross funding spent from the activity fold; equals `raised` when caught up
    fold_raised: int

    @property
    def drift(self) -> int:
        return self.raised - self.fold_raised

    @property
    def is_stale(self) -> bool:
        return self.drift != 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "id": self.deployment_id,
            "name": self.name,
            "symbol": self.symbol,
            "remainingTokensForSale": str(self.remaining_tokens_for_sale),
            "fundingToken": self.funding_token,
            "fundingTokenSymbol": self.funding_token_symbol,
            "fundingTokenDecimals": self.funding_token_decimals,
            "fundingTokensHeld": str(self.funding_tokens_held),
            "raised": str(self.raised),
            "refunded": str(self.refunded),
            "claimed": str(self.claimed),
            "foldRaised": str(self.fold_raised),
            "drift": str(self.drift),
            "isStale": self.is_stale,
        }


@dataclass(frozen=True)
class AggregationFailure:
    token: str
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {"token": self.token, "error": self.error}


AggregationResult = Union[SaleSummary, SalesStatsRow, AggregationFailure, None]


# ---------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------
class AggregationEngine:
    """
    Stateless: every call reads the stored rows and makes its own live reads
    through the injected chain reader.
    """

    def __init__(
        self,
        reader,
        block_time_seconds: int = AVG_BLOCK_TIME_SECONDS,
        aux_timeout: float = AUX_READ_TIMEOUT_SECONDS,
    ):
        self.reader = reader
        self.block_time_seconds = block_time_seconds
        self.aux_timeout = aux_timeout

    async def latest_block(self, token: str = "*") -> int:
        try:
            return await self.reader.get_block_number()
        except ChainReadError as e:
            raise AggregationError(token, f"latest block unavailable: {e}") from e

    async def aggregate_sale(self, token: str, latest_block_number: Optional[int] = None) -> Optional[SaleSummary]:
        """Strategy A. None when the token has no sale yet."""
        token = token.lower()
        config = await queries.current_sale_config(token)
        if config is None:
            return None
        activities = await queries.list_sale_activity(token)
        if latest_block_number is None:
            latest_block_number = await self.latest_block(token)
        return summarize_sale(config, activities, latest_block_number, self.block_time_seconds)

    async def _required_read(self, token: str, function: str):
        try:
            return await self.reader.read_contract(token, function)
        except ChainReadError as e:
            raise AggregationError(token, f"{function} unavailable: {e}") from e

    async def _aux_read(self, address: str, function: str):
        try:
            return await self.reader.read_contract(address, function, abi=ERC20_ABI, timeout=self.aux_timeout)
        except ChainReadError as e:
            logger.info(f"{function}@{address} unavailable: {e}")
            return None

    async def funding_token_meta(self, funding_token: str):
        symbol, decimals = await asyncio.gather(
            self._aux_read(funding_token, "symbol"),
            self._aux_read(funding_token, "decimals"),
        )
        # handle weird bytes32 symbols if any
        if isinstance(symbol, (bytes, bytearray)):
            symbol = symbol.decode("utf-8", errors="replace").rstrip("\x00")
        return (str(symbol) if symbol is not None else None,
                int(decimals) if decimals is not None else None)

    async def _refunded_from_chain(self, token: str, from_block: int) -> int:
        try:
            events = await self.reader.get_contract_events(token, "Refunded", from_block=from_block)
        except ChainReadError as e:
            raise AggregationError(token, f"Refunded events unavailable: {e}") from e
        total = 0
        for evt in events:
            amount = evt["args"]["fundingTokenAmount"]
            total += int(amount) if amount is not None else 0
        return total

    async def aggregate_stats(self, token: str, refunds_from_chain: bool = False) -> Optional[SalesStatsRow]:
        """Strategy B. None when the token has no deployment or no sale."""
        token = token.lower()
        deployment: Optional[TokenDeployment] = await queries.get_deployment(token)
        if deployment is None or await queries.current_sale_config(token) is None:
            return None

        remaining, held, claimed, funding_token = await asyncio.gather(
            self._required_read(token, "remainingTokensForSale"),
            self._required_read(token, "fundingTokensHeld"),
            self._required_read(token, "totalFundsClaimed"),
            self._required_read(token, "FUNDING_TOKEN"),
        )
        symbol, decimals = await self.funding_token_meta(funding_token)

        totals = fold_activity(await queries.list_sale_activity(token))
        if refunds_from_chain:
            refunded = await self._refunded_from_chain(token, deployment.block_number)
        else:
            refunded = totals.funding_refunded

        row = SalesStatsRow(
            token=token,
            deployment_id=deployment.id,
            name=deployment.name,
            symbol=deployment.symbol,
            remaining_tokens_for_sale=int(remaining),
            funding_token=str(funding_token).lower(),
            funding_token_symbol=symbol,
            funding_token_decimals=decimals,
            funding_tokens_held=int(held),
            claimed=int(claimed),
            refunded=refunded,
            raised=reconcile_raised(int(held), int(claimed), refunded),
            fold_raised=totals.funding_spent,
        )
        if row.is_stale:
            logger.info(f"{token}: authoritative raised {row.raised} vs indexed {row.fold_raised} (drift {row.drift})")
        return row

    async def aggregate_many(
        self,
        tokens: Sequence[str],
        strategy: str = "sale",
        **kwargs,
    ) -> Dict[str, AggregationResult]:
        """
        Fan out one aggregation per token. A failed token maps to an
        AggregationFailure; the others are unaffected.
        """
        if strategy == "sale":
            fn = self.aggregate_sale
        elif strategy == "stats":
            fn = self.aggregate_stats
        else:
            raise ValueError(f"unknown strategy {strategy!r}")

        tokens = [t.lower() for t in tokens]
        results = await asyncio.gather(*(fn(t, **kwargs) for t in tokens), return_exceptions=True)

        out: Dict[str, AggregationResult] = {}
        for token, res in zip(tokens, results):
            if isinstance(res, SaleIndexerError):
                out[token] = AggregationFailure(token=token, error=str(res))
            elif isinstance(res, BaseException):
                raise res
            else:
                out[token] = res
        return out

    async def sale_details(self) -> Dict[str, Any]:
        """
        Strategy A for every token with a sale, against one block number read.
        Raises AggregationError if that read fails (page-level failure).
        """
        latest = await self.latest_block()
        results = await self.aggregate_many(await queries.tokens_with_sales(), latest_block_number=latest)
        items: List[SaleSummary] = []
        errors: List[AggregationFailure] = []
        for res in results.values():
            if isinstance(res, AggregationFailure):
                errors.append(res)
            elif res is not None:
                items.append(res)
        return {
            "items": items,
            "errors": errors,
            "latestBlockNumber": latest,
            "blockTimeSeconds": self.block_time_seconds,
        }
