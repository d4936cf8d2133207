"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/webhook.py (to apply per-route limits with @limiter.limit()).

A single shared instance means every route counts against the same
in-memory store; one instance per module would give each module its own
counters and the limits would never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def webhook_rate_limit() -> str:
    """Per-client limit for protected webhook routes (WEBHOOK_RATE_LIMIT)."""
    return get_settings().webhook_rate_limit
