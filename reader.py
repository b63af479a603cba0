from decimal import Context, Decimal, InvalidOperation
from typing import Optional

from aggregator import AggregationEngine, AggregationFailure
from store.queries import list_deployments, tokens_with_sales

UNAVAILABLE = "—"

# wide enough for a full uint256 plus the fractional places
AMOUNT_CONTEXT = Context(prec=100)


def _scaled(raw, decimals: int, places: int) -> Decimal:
    human = Decimal(int(raw)).scaleb(-int(decimals), context=AMOUNT_CONTEXT)
    return human.quantize(Decimal(1).scaleb(-places), context=AMOUNT_CONTEXT)


def format_amount(raw, decimals: Optional[int] = 18, places: int = 4) -> str:
    """
    Convert raw uint256 into a human-readable number with commas.
    Example: "1000000000000000000" -> "1"
             "900000000000000000000000000" -> "900,000,000"
    """
    if raw is None or decimals is None:
        return UNAVAILABLE
    try:
        quantized = _scaled(raw, decimals, places)
    except (InvalidOperation, TypeError, ValueError):
        return UNAVAILABLE
    text = f"{quantized:,.{places}f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def format_dollar_amount(raw, decimals: Optional[int]) -> str:
    if raw is None or decimals is None:
        return UNAVAILABLE
    try:
        human = _scaled(raw, decimals, 2)
    except (InvalidOperation, TypeError, ValueError):
        return UNAVAILABLE
    return f"${human:,.2f}"


def short_address(value: str) -> str:
    if not value:
        return ""
    return f"{value[:6]}...{value[-4:]}"


async def summarize_sales(engine: AggregationEngine, token_decimals: int = 18):
    deployments = {d.token_address: d for d in await list_deployments(limit=200)}
    details = await engine.sale_details()

    if not details["items"] and not details["errors"]:
        print("No sales available yet.")
        return

    print(f"Sales at block {details['latestBlockNumber']}:")
    for s in details["items"]:
        d = deployments.get(s.token)
        label = f"{d.name} ({d.symbol})" if d else short_address(s.token)
        pct = f"{s.percent_tokens_remaining:.2f}%" if s.percent_tokens_remaining is not None else UNAVAILABLE
        days = f"{s.closing_in_days}d" if s.closing_in_days is not None else UNAVAILABLE
        print(
            f" • {label} [{s.status}] sold {format_amount(s.tokens_sold, token_decimals)}"
            f" / {format_amount(s.sale_amount, token_decimals)}"
            f" | remaining {pct} | closes in {days} | raised {s.funding_raised}"
        )
        if s.config_error:
            print(f"   ! {s.config_error}")
    for f in details["errors"]:
        print(f" ✖ {short_address(f.token)}: {f.error}")


async def summarize_stats(engine: AggregationEngine, token_decimals: int = 18):
    results = await engine.aggregate_many(await tokens_with_sales(), strategy="stats")
    if not results:
        print("No sales available yet.")
        return

    print("Sales overview:")
    for token, row in results.items():
        if isinstance(row, AggregationFailure):
            print(f" ✖ {short_address(token)}: {row.error}")
            continue
        if row is None:
            continue
        sym = row.funding_token_symbol or UNAVAILABLE
        dec = row.funding_token_decimals
        stale = " (indexer behind chain)" if row.is_stale else ""
        print(
            f" • {row.name} ({row.symbol}) remaining {format_amount(row.remaining_tokens_for_sale, token_decimals)}"
            f" | raised {format_dollar_amount(row.raised, dec)}"
            f" | refunded {format_dollar_amount(row.refunded, dec)}"
            f" | claimed {format_dollar_amount(row.claimed, dec)} {sym}{stale}"
        )
