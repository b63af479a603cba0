from settings import (
    CHAIN_READ_TIMEOUT_SECONDS,
    FACTORY_ADDRESS,
    RPC_URLS,
    START_BLOCK,
    START_BLOCKS_AGO,
)
from aggregator import AggregationEngine
from chain import ChainReader
from poller import AsyncSalePoller


def build_reader() -> ChainReader:
    return ChainReader(rpc_urls=RPC_URLS, timeout=CHAIN_READ_TIMEOUT_SECONDS)


def build_poller(reader: ChainReader = None) -> AsyncSalePoller:
    return AsyncSalePoller(
        reader=reader or build_reader(),
        factory_address=FACTORY_ADDRESS,
        start_blocks_ago=START_BLOCKS_AGO,
        start_from_block=START_BLOCK,
    )


def build_engine(reader: ChainReader = None) -> AggregationEngine:
    return AggregationEngine(reader or build_reader())
