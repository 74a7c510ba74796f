import json
import logging

import redis.asyncio as redis

from . import config

logger = logging.getLogger(__name__)

ORDER_STATUS_PREFIX = "order_status"

_client: redis.Redis | None = None


def order_status_key(order_id: str) -> str:
    return f"{ORDER_STATUS_PREFIX}:{order_id}"


def get_redis() -> redis.Redis:
    """Lazily builds the shared client; connections are opened on first command."""
    global _client
    if _client is None:
        logger.info(f"Connecting order status cache to {config.REDIS_HOST}:{config.REDIS_PORT}/{config.REDIS_DB}")
        _client = redis.Redis(
            host=config.REDIS_HOST,
            port=config.REDIS_PORT,
            db=config.REDIS_DB,
            decode_responses=True,
        )
    return _client


async def close_redis():
    global _client
    if _client is not None:
        logger.info("Closing order status cache connections...")
        await _client.aclose()
        _client = None


async def set_order_status(order_id: str, status: str, details: dict | None = None):
    """Stores the latest status of an order for REDIS_ORDER_STATUS_TTL_SECONDS. Errors are logged only."""
    entry = {"status": status, "details": details or {}}
    try:
        await get_redis().set(
            order_status_key(order_id), json.dumps(entry), ex=config.REDIS_ORDER_STATUS_TTL_SECONDS
        )
        logger.debug(f"Cached status {status} for order {order_id}")
    except Exception as e:
        logger.error(f"Could not cache status for order {order_id}: {e}")


async def get_order_status(order_id: str) -> dict | None:
    try:
        raw = await get_redis().get(order_status_key(order_id))
    except Exception as e:
        logger.error(f"Could not read cached status for order {order_id}: {e}")
        return None
    return json.loads(raw) if raw else None
