"""
api/limiter.py -- Shared slowapi rate limiter instance.

api/main.py mounts it as middleware; the route modules apply per-route
limits with @limiter.limit(). There must be exactly one instance, otherwise
each module counts requests separately and the limits never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
