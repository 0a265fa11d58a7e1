import os

from redis import asyncio as aioredis

from dropbin.utils.secret_utils import get_secret


aioredis_client = None


def get_redis_port() -> int:
    return int(os.environ.get("REDIS_PORT", 6379))


def get_redis_username() -> str | None:
    return os.environ.get("REDIS_USERNAME", None)


def load_aioredis() -> aioredis.Redis:
    host = get_secret("REDIS_HOST")
    if host is None:
        raise ValueError("REDIS_HOST is not set")
    return aioredis.Redis(
        host=host,
        port=get_redis_port(),
        username=get_redis_username(),
        password=get_secret("REDIS_PASSWORD"),
    )


def get_aioredis() -> aioredis.Redis:
    # one client per process; blob and token repos share its connection pool
    global aioredis_client
    if aioredis_client is None:
        aioredis_client = load_aioredis()
    return aioredis_client


async def close_aioredis():
    global aioredis_client
    if aioredis_client is not None:
        await aioredis_client.aclose()
        aioredis_client = None
