"""Redis client for sessions, request rate limiting and batch job locks"""
import logging
import secrets
from typing import Optional

import redis

from casefund.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None

# Session TTL (30 days)
SESSION_TTL = 30 * 24 * 60 * 60

if settings.ENVIRONMENT == "development":
    RATE_LIMIT_WINDOW = 60  # seconds
    RATE_LIMIT_REQUESTS = 1000  # requests per window (lenient for dev)
else:
    RATE_LIMIT_WINDOW = 60  # seconds
    RATE_LIMIT_REQUESTS = 120  # requests per window for state-changing operations


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def set_session(session_id: str, user_id: int) -> None:
    """Store session in Redis"""
    get_redis_client().setex(f"session:{session_id}", SESSION_TTL, user_id)


def get_session(session_id: str) -> Optional[int]:
    """Get user_id from session"""
    user_id = get_redis_client().get(f"session:{session_id}")
    return int(user_id) if user_id else None


def increment_rate_limit(identifier: str, window: int) -> int:
    """Increment rate limit counter and return current count.
    Uses Lua script to atomically increment and set TTL only for new keys (fixed window rate limiting)."""
    key = f"ratelimit:{identifier}"

    lua_script = """
    local count = redis.call('INCR', KEYS[1])
    if count == 1 then
        redis.call('EXPIRE', KEYS[1], ARGV[1])
    end
    return count
    """

    count = get_redis_client().eval(lua_script, 1, key, window)
    return int(count)


def check_rate_limit(identifier: str) -> bool:
    """Check if request is within rate limit. Returns True if allowed, False if rate limited."""
    return increment_rate_limit(identifier, RATE_LIMIT_WINDOW) <= RATE_LIMIT_REQUESTS


def acquire_job_lock(job_name: str, timeout: Optional[int] = None) -> Optional[str]:
    """Try to take the lock for a batch job.

    Returns the lock token when acquired, None when another worker holds it.
    """
    token = secrets.token_hex(16)
    acquired = get_redis_client().set(
        f"joblock:{job_name}",
        token,
        nx=True,
        ex=timeout or settings.JOB_LOCK_TIMEOUT
    )
    return token if acquired else None


def release_job_lock(job_name: str, token: str) -> bool:
    """Release a batch job lock only if we still own it"""
    lua_script = """
    if redis.call('GET', KEYS[1]) == ARGV[1] then
        return redis.call('DEL', KEYS[1])
    end
    return 0
    """
    try:
        return bool(get_redis_client().eval(lua_script, 1, f"joblock:{job_name}", token))
    except redis.RedisError as e:
        # Lock expires on its own
        logger.warning(f"Failed to release job lock {job_name}: {e}")
        return False
