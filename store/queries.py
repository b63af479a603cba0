from __future__ import annotations
from typing import Dict, List, Optional

from .models import SaleActivity, SaleConfig, TokenDeployment


def _token_key(token: str) -> str:
    return token.lower()


async def list_deployments(limit: int = 50) -> List[TokenDeployment]:
    return await TokenDeployment.all().order_by("-block_number", "-log_index").limit(limit)


async def get_deployment(token: str) -> Optional[TokenDeployment]:
    return await TokenDeployment.filter(token_address=_token_key(token)).order_by("block_number").first()


async def list_sale_activity(token: Optional[str] = None) -> List[SaleActivity]:
    qs = SaleActivity.all()
    if token:
        qs = qs.filter(token_address=_token_key(token))
    return await qs.order_by("block_number", "log_index")


async def current_sale_config(token: str) -> Optional[SaleConfig]:
    """Most recent SaleCreated for the token; older rows stay as history."""
    return await (
        SaleConfig.filter(token_address=_token_key(token))
        .order_by("-block_number", "-log_index")
        .first()
    )


async def sale_config_history(token: str) -> List[SaleConfig]:
    return await SaleConfig.filter(token_address=_token_key(token)).order_by("-block_number", "-log_index")


async def current_sale_configs() -> Dict[str, SaleConfig]:
    """Latest config per token, in one pass over all configs newest first."""
    by_token: Dict[str, SaleConfig] = {}
    for cfg in await SaleConfig.all().order_by("-block_number", "-log_index"):
        by_token.setdefault(cfg.token_address, cfg)
    return by_token


async def tokens_with_sales() -> List[str]:
    return list((await current_sale_configs()).keys())


async def known_token_addresses() -> List[str]:
    addrs = await TokenDeployment.all().order_by("block_number").values_list("token_address", flat=True)
    return list(dict.fromkeys(addrs))
