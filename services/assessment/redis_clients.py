from __future__ import annotations

from typing import Dict, Tuple

import redis

from . import settings

_REDIS_CLIENTS: Dict[Tuple[str, bool], redis.Redis] = {}


def get_redis_client(url: str | None = None, *, decode_responses: bool = True) -> redis.Redis:
    redis_url = str(url or settings.redis_url())
    key = (redis_url, bool(decode_responses))
    client = _REDIS_CLIENTS.get(key)
    if client is None:
        client = redis.Redis.from_url(redis_url, decode_responses=decode_responses)
        _REDIS_CLIENTS[key] = client
    return client


def require_redis_client(*, decode_responses: bool = True) -> redis.Redis:
    client = get_redis_client(decode_responses=decode_responses)
    try:
        client.ping()
    except Exception as exc:
        raise RuntimeError("Redis required: unable to connect") from exc
    return client
