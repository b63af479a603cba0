from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Tuple

from tortoise.exceptions import IntegrityError

from normalizer import (
    ContractKind,
    DomainEvent,
    Purchased,
    Refunded,
    SaleCreated,
    TokenDeployed,
    normalize,
)
from .models import SaleActivity, SaleConfig, TokenDeployment

logger = logging.getLogger("store.projector")


@dataclass
class ProjectionStats:
    inserted: int = 0
    duplicates: int = 0
    dropped: int = 0


async def _insert_deployment(evt: TokenDeployed) -> None:
    await TokenDeployment.create(
        id=evt.event_id,
        token_address=evt.token,
        deployer=evt.deployer,
        beneficiary=evt.beneficiary,
        name=evt.name,
        symbol=evt.symbol,
        max_supply=str(evt.max_supply),
        block_number=evt.block_number,
        tx_hash=evt.tx_hash,
        log_index=evt.log_index,
    )


async def _insert_sale_config(evt: SaleCreated) -> None:
    await SaleConfig.create(
        id=evt.event_id,
        token_address=evt.token,
        sale_amount=str(evt.sale_amount),
        purchase_price=str(evt.purchase_price),
        sale_start_block=evt.sale_start_block,
        sale_end_block=evt.sale_end_block,
        refundable_decay_start_block=evt.refundable_decay_start_block,
        refundable_decay_end_block=evt.refundable_decay_end_block,
        refundable_bps_at_start=evt.refundable_bps_at_start,
        block_number=evt.block_number,
        tx_hash=evt.tx_hash,
        log_index=evt.log_index,
    )


async def _insert_purchase(evt: Purchased) -> None:
    await SaleActivity.create(
        id=evt.event_id,
        token_address=evt.token,
        kind=SaleActivity.KIND_PURCHASE,
        account=evt.account,
        token_amount=str(evt.tokens_purchased),
        funding_amount=str(evt.funding_amount_spent),
        block_number=evt.block_number,
        tx_hash=evt.tx_hash,
        log_index=evt.log_index,
    )


async def _insert_refund(evt: Refunded) -> None:
    await SaleActivity.create(
        id=evt.event_id,
        token_address=evt.token,
        kind=SaleActivity.KIND_REFUND,
        account=evt.account,
        token_amount=str(evt.token_amount),
        funding_amount=str(evt.funding_token_amount),
        block_number=evt.block_number,
        tx_hash=evt.tx_hash,
        log_index=evt.log_index,
    )


_INSERTERS = {
    TokenDeployed: _insert_deployment,
    SaleCreated: _insert_sale_config,
    Purchased: _insert_purchase,
    Refunded: _insert_refund,
}


async def project(evt: DomainEvent) -> bool:
    """
    Append the row for one domain event. Returns False when the event id
    was already projected (idempotent by primary key).
    """
    inserter = _INSERTERS.get(type(evt))
    if inserter is None:
        raise TypeError(f"not a domain event: {evt!r}")
    try:
        await inserter(evt)
    except IntegrityError:
        logger.debug(f"duplicate {type(evt).__name__} {evt.event_id}")
        return False
    logger.debug(f"{type(evt).__name__} blk {evt.block_number} | {evt.token} | {evt.event_id}")
    return True


async def project_logs(logs: Iterable[Tuple[Any, ContractKind, str]]) -> ProjectionStats:
    """
    Normalize and project (raw_log, contract_kind, event_name) triples in the
    order given. Callers pass them in chain order. MalformedEventError
    propagates and stops the batch at the offending log.
    """
    stats = ProjectionStats()
    for raw, kind, event_name in logs:
        evt = normalize(raw, kind, event_name)
        if evt is None:
            stats.dropped += 1
            continue
        if await project(evt):
            stats.inserted += 1
        else:
            stats.duplicates += 1
    return stats
