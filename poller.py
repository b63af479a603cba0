import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from web3 import Web3

from abi.get_abis import FACTORY_ABI, SALE_ABI, event_topic
from chain import ChainReader, block_ranges, decode_log
from exceptions import ChainReadError, MalformedEventError
from normalizer import EVENTS_BY_KIND, ContractKind, normalize_address
from store.models import IndexerCheckpoint
from store.projector import ProjectionStats, project_logs
from store.queries import known_token_addresses

DecodedLog = Tuple[Any, ContractKind, str]


class AsyncSalePoller:
    def __init__(
        self,
        reader: ChainReader,
        factory_address: str,
        start_blocks_ago: int = 9999,
        start_from_block: int = 0,
        checkpoint_name: str = "sales",
    ):
        self.logger = logging.getLogger("AsyncSalePoller")
        self.reader = reader
        self.factory_address = Web3.to_checksum_address(factory_address)
        self.start_blocks_ago = start_blocks_ago
        self.start_from_block = start_from_block
        self.checkpoint_name = checkpoint_name

        self.from_block: Optional[int] = None
        self.tracked_tokens: set = set()

        self.factory_topics = self._get_event_signatures(FACTORY_ABI, ContractKind.FACTORY)
        self.sale_topics = self._get_event_signatures(SALE_ABI, ContractKind.SALE)
        # decoding only; the address is swapped per log
        self._factory_contract = Web3().eth.contract(address=self.factory_address, abi=FACTORY_ABI)
        self._sale_contract = Web3().eth.contract(abi=SALE_ABI)

    def _get_event_signatures(self, abi, kind: ContractKind) -> Dict[str, str]:
        """topic0 -> event name for every event this contract kind emits."""
        return {event_topic(abi, name): name for name in EVENTS_BY_KIND[kind]}

    async def load_state(self) -> None:
        """Resume from the checkpoint, or start fresh as configured."""
        cp = await IndexerCheckpoint.get_or_none(name=self.checkpoint_name)
        if cp is not None:
            self.from_block = int(cp.next_block)
        elif self.start_from_block:
            self.from_block = self.start_from_block
        else:
            current_block = await self.reader.get_block_number()
            self.from_block = max(current_block - self.start_blocks_ago, 0)
        self.tracked_tokens = {a for a in await known_token_addresses()}
        self.logger.info(f"Starting from block: {self.from_block}, tracking {len(self.tracked_tokens)} sale contracts")

    async def save_checkpoint(self, next_block: int) -> None:
        await IndexerCheckpoint.update_or_create(
            defaults={"next_block": next_block}, name=self.checkpoint_name
        )
        self.from_block = next_block

    async def reprocess_from(self, block: int) -> None:
        """Rewind; replayed events are absorbed as duplicates."""
        self.logger.warning(f"Reprocessing from block {block}")
        await self.save_checkpoint(block)

    def _decode(self, log: Dict[str, Any]) -> Optional[DecodedLog]:
        topics = log.get("topics") or []
        if not topics:
            return None
        topic0 = "0x" + bytes(topics[0]).hex() if isinstance(topics[0], (bytes, bytearray)) else str(topics[0]).lower()
        addr = normalize_address(log.get("address"))

        if topic0 in self.factory_topics and addr == self.factory_address.lower():
            name = self.factory_topics[topic0]
            return decode_log(self._factory_contract, name, log), ContractKind.FACTORY, name
        if topic0 in self.sale_topics:
            name = self.sale_topics[topic0]
            return decode_log(self._sale_contract, name, log), ContractKind.SALE, name
        return None

    async def _fetch_chunk(self, lo: int, hi: int) -> List[DecodedLog]:
        factory_logs = await self.reader.get_logs({
            "fromBlock": lo, "toBlock": hi,
            "address": self.factory_address,
            "topics": [list(self.factory_topics.keys())],
        })
        decoded = [d for d in (self._decode(lg) for lg in factory_logs) if d is not None]

        # sale contracts deployed inside this chunk can emit in it too
        for evt, _, _ in decoded:
            token = normalize_address(evt["args"].get("token"))
            if token:
                self.tracked_tokens.add(token)

        if self.tracked_tokens:
            sale_logs = await self.reader.get_logs({
                "fromBlock": lo, "toBlock": hi,
                "address": [Web3.to_checksum_address(t) for t in sorted(self.tracked_tokens)],
                "topics": [list(self.sale_topics.keys())],
            })
            decoded.extend(d for d in (self._decode(lg) for lg in sale_logs) if d is not None)

        # chain order across both contract kinds
        decoded.sort(key=lambda d: (int(d[0]["blockNumber"]), int(d[0]["logIndex"])))
        return decoded

    async def fetch_logs(self, chunk_size: int = 2000, max_retries: int = 3) -> ProjectionStats:
        """Index everything from the checkpoint up to the current head."""
        if self.from_block is None:
            await self.load_state()
        total = ProjectionStats()
        to_block = await self.reader.get_block_number()

        for lo, hi in block_ranges(self.from_block, to_block, chunk_size):
            retries = 0
            while True:
                try:
                    decoded = await self._fetch_chunk(lo, hi)
                    break
                except ChainReadError as e:
                    retries += 1
                    if retries > max_retries:
                        raise
                    self.logger.warning(f"blocks {lo}-{hi} retry {retries}/{max_retries}: {e}")
                    await asyncio.sleep(2 ** retries)

            try:
                stats = await project_logs(decoded)
            except MalformedEventError as e:
                self.logger.error(f"Halting at blocks {lo}-{hi}: {e}")
                raise
            total.inserted += stats.inserted
            total.duplicates += stats.duplicates
            total.dropped += stats.dropped

            await self.save_checkpoint(hi + 1)
            self.logger.info(
                f"Updated to block: {hi + 1} (+{stats.inserted} new, {stats.duplicates} dup, {stats.dropped} dropped)"
            )
        return total

    async def run_polling(self, sleep_time: float = 5, chunk_size: int = 2000):
        self.logger.info("Starting event polling...")
        try:
            while True:
                try:
                    await self.fetch_logs(chunk_size=chunk_size)
                except ChainReadError as e:
                    # checkpoint stays at the failed chunk; next round resumes there
                    self.logger.warning(f"Chain unavailable, retrying in {sleep_time}s: {e}")
                await asyncio.sleep(sleep_time)
        except asyncio.CancelledError:
            self.logger.info("Polling canceled.")
            raise
