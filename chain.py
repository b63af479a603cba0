"""
Chain read collaborator.

Async web3 client used by the poller and the aggregation engine:
- every read is a suspension point bounded by a timeout
- failures raise ChainReadError; transport failures also rotate to the next RPC URL
- auxiliary balance reads degrade to "unavailable" instead of raising
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import aiohttp
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from abi.get_abis import ERC20_ABI, SALE_ABI, event_topic
from exceptions import ChainReadError, MalformedEventError
from normalizer import hex_str
from settings import AUX_CHAINS, AUX_READ_TIMEOUT_SECONDS, CHAIN_READ_TIMEOUT_SECONDS, FUNDING_TOKEN_ADDRESS


TRANSPORT_ERRORS = (asyncio.TimeoutError, aiohttp.ClientError, OSError)


def block_ranges(start: int, end: int, span: Optional[int]) -> Iterable[Tuple[int, int]]:
    """Inclusive [lo, hi] windows of at most `span` blocks."""
    if not span:
        if start <= end:
            yield start, end
        return
    cur = start
    while cur <= end:
        hi = min(cur + span - 1, end)
        yield cur, hi
        cur = hi + 1


def decode_log(contract, event_name: str, log: Dict[str, Any]):
    """
    Decode a raw log with the contract's event ABI. A log whose topic matched
    but whose data doesn't decode means the ABI is wrong: fatal.
    """
    try:
        return getattr(contract.events, event_name)().process_log(log)
    except Exception as e:
        raise MalformedEventError(
            f"{event_name}: cannot decode log tx={hex_str(log.get('transactionHash'))} "
            f"log={log.get('logIndex')}: {type(e).__name__}: {e}",
            event_name,
        ) from e


class ChainReader:
    def __init__(
        self,
        rpc_urls: Sequence[str],
        timeout: float = CHAIN_READ_TIMEOUT_SECONDS,
        request_timeout: float = 10,
        block_span: Optional[int] = 10_000,
    ):
        if not rpc_urls:
            raise ValueError("ChainReader needs at least one RPC URL.")
        self.logger = logging.getLogger("ChainReader")
        self.rpc_urls = list(rpc_urls)
        self.current_rpc = 0
        self.timeout = timeout
        self.request_timeout = request_timeout
        self.block_span = block_span
        self.web3 = self._make_client(self.rpc_urls[self.current_rpc])

    def _make_client(self, url: str) -> AsyncWeb3:
        return AsyncWeb3(AsyncHTTPProvider(url, request_kwargs={"timeout": self.request_timeout}))

    async def switch_rpc(self) -> None:
        """Switch to the next RPC in case of failure."""
        if len(self.rpc_urls) < 2:
            return
        stale = self.web3
        self.current_rpc = (self.current_rpc + 1) % len(self.rpc_urls)
        self.logger.warning(f"Switching to next RPC: {self.rpc_urls[self.current_rpc]}")
        self.web3 = self._make_client(self.rpc_urls[self.current_rpc])
        await stale.provider.disconnect()

    async def close(self) -> None:
        """Release the provider's HTTP sessions."""
        await self.web3.provider.disconnect()

    def contract(self, address: str, abi=SALE_ABI):
        return self.web3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    async def _call(self, operation: str, make_call, timeout: Optional[float] = None):
        try:
            return await asyncio.wait_for(make_call(), timeout or self.timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.warning(f"{operation} failed on {self.rpc_urls[self.current_rpc]}: {type(e).__name__}: {e}")
            # reverts and bad calls fail the same way on every endpoint
            if isinstance(e, TRANSPORT_ERRORS):
                await self.switch_rpc()
            raise ChainReadError(operation, e) from e

    async def get_block_number(self) -> int:
        return int(await self._call("getBlockNumber", lambda: self.web3.eth.block_number))

    async def read_contract(
        self,
        address: str,
        function: str,
        args: Sequence[Any] = (),
        abi=SALE_ABI,
        timeout: Optional[float] = None,
    ):
        def make_call():
            c = self.contract(address, abi)
            return getattr(c.functions, function)(*args).call()

        return await self._call(f"readContract {function}@{address}", make_call, timeout)

    async def get_logs(self, filter_params: Dict[str, Any]) -> List[Dict[str, Any]]:
        return list(await self._call(
            f"getLogs {filter_params.get('fromBlock')}-{filter_params.get('toBlock')}",
            lambda: self.web3.eth.get_logs(filter_params),
        ))

    async def get_contract_events(
        self,
        address: str,
        event_name: str,
        from_block: int,
        to_block: int | str = "latest",
        abi=SALE_ABI,
    ) -> List[Any]:
        """
        Decoded events of one type emitted by `address`, in chain order,
        de-duplicated on (tx_hash, log_index).
        """
        end = await self.get_block_number() if to_block == "latest" else int(to_block)
        addr = Web3.to_checksum_address(address)
        topic0 = event_topic(abi, event_name)
        contract = self.contract(addr, abi)

        raw_logs: List[Dict[str, Any]] = []
        for lo, hi in block_ranges(int(from_block), end, self.block_span):
            raw_logs.extend(await self.get_logs({
                "fromBlock": lo, "toBlock": hi,
                "address": addr,
                "topics": [topic0],
            }))

        seen = set()
        decoded = []
        for lg in raw_logs:
            key = (hex_str(lg["transactionHash"]), int(lg["logIndex"]))
            if key in seen:
                continue
            seen.add(key)
            decoded.append(decode_log(contract, event_name, lg))

        decoded.sort(key=lambda e: (int(e["blockNumber"]), int(e["logIndex"])))
        return decoded


# ---------------------------------------------------------------------
# Auxiliary balance reads (degraded on failure)
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class AuxChain:
    name: str
    rpc_url: str
    token_address: str
    decimals: int = 6


@dataclass
class AuxBalance:
    chain: str
    balance: Optional[int]  # None = unavailable
    decimals: int
    configured: bool = True

    @property
    def available(self) -> bool:
        return self.balance is not None


def aux_chains_from_settings() -> List[AuxChain]:
    """An entry with an empty token field reads the home funding token."""
    return [
        AuxChain(name=n, rpc_url=url, token_address=tok or FUNDING_TOKEN_ADDRESS)
        for n, url, tok in AUX_CHAINS
    ]


async def read_aux_balances(
    account: str,
    chains: Sequence[AuxChain],
    timeout: float = AUX_READ_TIMEOUT_SECONDS,
    reader_factory=ChainReader,
) -> List[AuxBalance]:
    """
    Funding-token balanceOf(account) on each auxiliary chain, concurrently.
    A failed or timed-out read yields balance=None; nothing here raises.
    """
    log = logging.getLogger("ChainReader")

    async def one(chain: AuxChain) -> AuxBalance:
        if not chain.rpc_url or not chain.token_address:
            return AuxBalance(chain=chain.name, balance=None, decimals=chain.decimals, configured=False)
        reader = reader_factory([chain.rpc_url], timeout=timeout)
        try:
            raw = await reader.read_contract(chain.token_address, "balanceOf", (Web3.to_checksum_address(account),), abi=ERC20_ABI)
        except ChainReadError as e:
            log.info(f"balance read on {chain.name} unavailable: {e}")
            return AuxBalance(chain=chain.name, balance=None, decimals=chain.decimals)
        finally:
            await reader.close()
        return AuxBalance(chain=chain.name, balance=int(raw), decimals=chain.decimals)

    return list(await asyncio.gather(*(one(c) for c in chains)))
