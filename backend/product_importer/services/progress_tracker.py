"""Progress snapshots for import jobs, stored in Redis for polling and SSE."""

from __future__ import annotations

import json
import logging
import ssl
from datetime import timedelta
from functools import lru_cache
from typing import Any

from redis import Redis
from redis.exceptions import RedisError

from product_importer.core.config import get_settings

logger = logging.getLogger(__name__)

PROGRESS_PREFIX = "imports:progress:"
PROGRESS_TTL = timedelta(hours=24)


def _connect(url: str) -> Redis:
    # Upstash only accepts TLS and serves certificates redis-py cannot verify.
    tls = url.startswith("rediss://") or ".upstash.io" in url
    if tls and url.startswith("redis://"):
        url = "rediss://" + url.removeprefix("redis://")
    client = Redis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=2,
        socket_timeout=2,
    )
    if tls:
        client.connection_pool.connection_kwargs["ssl_cert_reqs"] = ssl.CERT_NONE
    return client


@lru_cache
def get_redis_client() -> Redis:
    return _connect(get_settings().redis_url)


def _key(job_id: str) -> str:
    return f"{PROGRESS_PREFIX}{job_id}"


def publish_progress(
    job_id: str,
    progress: float,
    message: str | None = None,
    *,
    status: str | None = None,
    phase: str | None = None,
    meta: dict[str, Any] | None = None,
) -> None:
    """Store the latest snapshot for a job; Redis outages are logged and ignored."""
    snapshot = {
        "job_id": job_id,
        "progress": max(0.0, min(progress, 1.0)),
        "message": message,
        "status": status,
        "phase": phase,
        "meta": meta or {},
    }
    try:
        get_redis_client().set(_key(job_id), json.dumps(snapshot), ex=int(PROGRESS_TTL.total_seconds()))
    except RedisError as e:
        logger.debug(f"Progress snapshot for {job_id} not published: {e}")


def fetch_progress(job_id: str) -> dict[str, Any]:
    """Return the latest snapshot, or an empty dict when none is available."""
    try:
        raw = get_redis_client().get(_key(job_id))
    except RedisError:
        return {}
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {}
