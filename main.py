"""
Entry point.

  python main.py index [--once] [--chunk 2000] [--sleep 5]
  python main.py reprocess --from-block 12345
  python main.py report [--stats]
  python main.py serve [--host 127.0.0.1] [--port 42069]
"""

import argparse
import asyncio as asy
import logging

import settings
from indexer_config import build_engine, build_poller, build_reader
from reader import summarize_sales, summarize_stats
from store.db import close_db, init_db

logger = logging.getLogger("main")


async def run_index(once: bool, chunk: int, sleep: float):
    await init_db()
    poller = build_poller()
    try:
        if once:
            stats = await poller.fetch_logs(chunk_size=chunk)
            logger.info(f"Indexed: {stats.inserted} new, {stats.duplicates} dup, {stats.dropped} dropped")
        else:
            await poller.run_polling(sleep, chunk)
    finally:
        await poller.reader.close()
        await close_db()


async def run_reprocess(from_block: int, chunk: int):
    await init_db()
    poller = build_poller()
    try:
        await poller.load_state()
        await poller.reprocess_from(from_block)
        await poller.fetch_logs(chunk_size=chunk)
    finally:
        await poller.reader.close()
        await close_db()


async def run_report(stats: bool):
    await init_db()
    engine = build_engine()
    try:
        if stats:
            await summarize_stats(engine)
        else:
            await summarize_sales(engine)
    finally:
        await engine.reader.close()
        await close_db()


def serve(host: str, port: int):
    import uvicorn
    from api import create_app

    uvicorn.run(create_app(build_engine(build_reader())), host=host, port=port, log_level=settings.LOG_LEVEL.lower())


def main(argv=None):
    parser = argparse.ArgumentParser(description="Refundable token sale indexer")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_index = sub.add_parser("index", help="poll factory and sale events into the database")
    p_index.add_argument("--once", action="store_true", help="catch up to the head and exit")
    p_index.add_argument("--chunk", type=int, default=settings.CHUNK_SIZE)
    p_index.add_argument("--sleep", type=float, default=settings.POLL_INTERVAL_SECONDS)

    p_re = sub.add_parser("reprocess", help="rewind the checkpoint and re-index")
    p_re.add_argument("--from-block", type=int, required=True)
    p_re.add_argument("--chunk", type=int, default=settings.CHUNK_SIZE)

    p_report = sub.add_parser("report", help="print sale summaries")
    p_report.add_argument("--stats", action="store_true", help="authoritative-balance stats instead")

    p_serve = sub.add_parser("serve", help="run the query API")
    p_serve.add_argument("--host", default=settings.API_HOST)
    p_serve.add_argument("--port", type=int, default=settings.API_PORT)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.cmd == "index":
        try:
            asy.run(run_index(args.once, args.chunk, args.sleep))
        except KeyboardInterrupt:
            logger.info("Polling stopped by user.")
    elif args.cmd == "reprocess":
        asy.run(run_reprocess(args.from_block, args.chunk))
    elif args.cmd == "report":
        asy.run(run_report(args.stats))
    elif args.cmd == "serve":
        serve(args.host, args.port)


if __name__ == '__main__':
    main()
