import logging
from typing import Optional

from tortoise import Tortoise, connections

from settings import DB_URL

logger = logging.getLogger("store.db")


def tortoise_config(db_url: Optional[str] = None) -> dict:
    """Tortoise config dict; DB_URL from the environment unless overridden."""
    return {
        "connections": {"default": db_url or DB_URL},
        "apps": {
            "sales": {"models": ["store.models"], "default_connection": "default"},
        },
    }


async def init_db(db_url: Optional[str] = None, generate_schemas: bool = True) -> None:
    config = tortoise_config(db_url)
    await Tortoise.init(config=config)
    if generate_schemas:
        await Tortoise.generate_schemas(safe=True)
    logger.info(f"Database ready: {config['connections']['default']}")


async def close_db() -> None:
    await connections.close_all()
