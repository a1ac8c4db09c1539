"""
Hybrid in-memory + Redis rate limiting utilities
Fixed windows counted in process memory and synced to Redis periodically
"""

import logging
import os
import time
from threading import Lock
from typing import Optional

import redis
from fastapi import HTTPException, Request, status

logger = logging.getLogger(__name__)

# Redis connection
redis_client: Optional[redis.Redis] = None

# Format: {key: {'count': int, 'reset_time': int, 'last_redis_sync': int}}
memory_cache: dict[str, dict] = {}
cache_lock = Lock()

MEMORY_CACHE_SYNC_INTERVAL = 10  # Sync to Redis every 10 seconds
MEMORY_CACHE_CLEANUP_INTERVAL = 60  # Clean up expired entries every 60 seconds
last_cleanup_time = 0

REDIS_RETRY_INTERVAL = 30  # Seconds before reconnecting after a failed attempt
redis_unavailable_until = 0.0


def get_redis_client() -> redis.Redis:
    """
    Get or create Redis client.
    REDIS_URL wins; otherwise REDIS_HOST/PORT/PASSWORD/DB/SSL are used.
    """
    global redis_client

    if redis_client is None:
        redis_url = os.getenv("REDIS_URL")
        connection_options = {
            "decode_responses": True,
            "socket_connect_timeout": 5,
            "socket_timeout": 5,
            "retry_on_timeout": True,
            "health_check_interval": 30,
            "max_connections": 20,
        }

        try:
            if redis_url:
                masked_url = redis_url.split("@")[-1] if "@" in redis_url else "****"
                logger.info(f"📡 Connecting to Redis via URL: ****@{masked_url}")
                client = redis.from_url(redis_url, **connection_options)
            else:
                redis_host = os.getenv("REDIS_HOST", "localhost")
                redis_port = int(os.getenv("REDIS_PORT", "6379"))
                redis_ssl = os.getenv("REDIS_SSL", "false").lower() == "true"
                logger.info(
                    f"📡 Connecting to Redis at {redis_host}:{redis_port} "
                    f"({'with' if redis_ssl else 'without'} SSL)"
                )
                client = redis.Redis(
                    host=redis_host,
                    port=redis_port,
                    password=os.getenv("REDIS_PASSWORD") or None,
                    db=int(os.getenv("REDIS_DB", "0")),
                    ssl=redis_ssl,
                    **connection_options,
                )
            client.ping()
            redis_client = client
            logger.info("Redis connected successfully")
        except Exception as e:
            logger.error(f"❌ Failed to connect to Redis: {str(e)}")
            raise

    return redis_client


def get_limiter_store() -> Optional[redis.Redis]:
    """
    Redis client for rate limiting, or None to count in memory only.

    A failed connection is not retried for REDIS_RETRY_INTERVAL seconds.
    """
    global redis_unavailable_until

    if time.time() < redis_unavailable_until:
        return None
    try:
        return get_redis_client()
    except Exception as e:
        redis_unavailable_until = time.time() + REDIS_RETRY_INTERVAL
        logger.warning(
            f"⚠️ Redis unavailable, rate limiting in memory for {REDIS_RETRY_INTERVAL}s: {e}"
        )
        return None


def get_client_ip(request: Request) -> str:
    """Client IP, taking the first X-Forwarded-For entry when behind a proxy"""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


def cleanup_expired_cache():
    """Remove expired entries from memory cache"""
    global last_cleanup_time
    current_time = int(time.time())

    if current_time - last_cleanup_time < MEMORY_CACHE_CLEANUP_INTERVAL:
        return

    with cache_lock:
        expired_keys = [
            k for k, v in memory_cache.items() if current_time >= v.get("reset_time", 0)
        ]
        for k in expired_keys:
            del memory_cache[k]

        if expired_keys:
            logger.debug(f"🧹 Cleaned up {len(expired_keys)} expired rate limit entries")

    last_cleanup_time = current_time


def reset_rate_limits():
    """Forget every in-memory window and any Redis backoff (used by tests and admin tooling)"""
    global last_cleanup_time, redis_unavailable_until
    with cache_lock:
        memory_cache.clear()
    last_cleanup_time = 0
    redis_unavailable_until = 0.0


def check_rate_limit(
    key: str, limit: int, window_seconds: int, redis_client: Optional[redis.Redis]
) -> tuple[bool, int, int]:
    """Check if rate limit is exceeded using hybrid in-memory + Redis approach

    1. Check the in-memory window first (no Redis calls)
    2. Seed a new window from Redis so limits survive restarts and span workers
    3. Sync the count back to Redis at most every MEMORY_CACHE_SYNC_INTERVAL

    Args:
        key: Redis key for this rate limit
        limit: Maximum number of requests allowed
        window_seconds: Time window in seconds
        redis_client: Redis client instance, or None to count in memory only

    Returns:
        Tuple of (is_allowed, current_count, ttl_seconds)

    Raises:
        Exception: Any internal failure, so the caller can deny the request
    """
    try:
        current_time = int(time.time())

        cleanup_expired_cache()

        with cache_lock:
            if key not in memory_cache and redis_client is None:
                memory_cache[key] = {
                    "count": 0,
                    "reset_time": current_time + window_seconds,
                    "last_redis_sync": current_time,
                }
            elif key not in memory_cache:
                try:
                    redis_count = redis_client.get(key)
                    redis_ttl = redis_client.ttl(key)

                    if redis_count and redis_ttl > 0:
                        memory_cache[key] = {
                            "count": int(redis_count),
                            "reset_time": current_time + redis_ttl,
                            "last_redis_sync": current_time,
                        }
                    else:
                        memory_cache[key] = {
                            "count": 0,
                            "reset_time": current_time + window_seconds,
                            "last_redis_sync": 0,
                        }
                except Exception as e:
                    logger.warning(f"⚠️ Failed to load from Redis, using memory only: {e}")
                    memory_cache[key] = {
                        "count": 0,
                        "reset_time": current_time + window_seconds,
                        "last_redis_sync": current_time,
                    }

            cache_entry = memory_cache[key]

            if current_time >= cache_entry["reset_time"]:
                cache_entry["count"] = 0
                cache_entry["reset_time"] = current_time + window_seconds
                cache_entry["last_redis_sync"] = 0

            is_allowed = cache_entry["count"] < limit
            if is_allowed:
                cache_entry["count"] += 1

            ttl = max(1, cache_entry["reset_time"] - current_time)

            time_since_sync = current_time - cache_entry.get("last_redis_sync", 0)
            if redis_client is not None and time_since_sync >= MEMORY_CACHE_SYNC_INTERVAL:
                try:
                    redis_client.set(key, cache_entry["count"], ex=ttl)
                    cache_entry["last_redis_sync"] = current_time
                    # Keys embed phone numbers; log the prefix only
                    logger.debug(
                        f"📡 Synced {key.split(':', 1)[0]} to Redis: {cache_entry['count']}/{limit}"
                    )
                except Exception as e:
                    logger.warning(f"⚠️ Failed to sync to Redis: {e}")

            return is_allowed, cache_entry["count"], ttl

    except Exception as e:
        logger.error(f"❌ Rate limit check failed: {str(e)}")
        raise


def enforce_rate_limit(
    request: Request, key_prefix: str, identifier: str, limit: int, window_seconds: int
) -> None:
    """
    Raise 429 (with Retry-After) when `identifier` is over its limit.

    Counts in memory when Redis is unreachable. Raises 503 when the limiter
    itself fails (fail-closed).
    """
    key = f"{key_prefix}:{identifier}"
    try:
        client = get_limiter_store()
        is_allowed, current_count, ttl = check_rate_limit(key, limit, window_seconds, client)
    except Exception as e:
        logger.error(f"❌ Rate limiting error: {str(e)}")
        logger.warning("🔒 Denying request due to rate limiting error (fail-closed mode)")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Rate limiting service temporarily unavailable",
        ) from e

    if not is_allowed:
        retry_after = max(1, ttl)
        logger.warning(f"🚫 Rate limit EXCEEDED for {key_prefix} - {current_count}/{limit}")
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Rate limit exceeded. Maximum {limit} requests per {window_seconds} seconds.",
            headers={"Retry-After": str(retry_after)},
        )

    request.state.rate_limit_remaining = limit - current_count
    request.state.rate_limit_limit = limit
    request.state.rate_limit_reset = int(time.time()) + ttl


def create_rate_limiter(limit: int, window_seconds: int, key_prefix: str = "rate_limit"):
    """
    Create a per-IP rate limiter dependency

    Example usage:
        rate_limit_admin = create_rate_limiter(limit=30, window_seconds=60, key_prefix="admin")

        @router.get("/slo")
        async def slo_report(_: None = Depends(rate_limit_admin)):
            ...
    """

    async def rate_limiter(request: Request):
        enforce_rate_limit(request, key_prefix, get_client_ip(request), limit, window_seconds)

    return rate_limiter
