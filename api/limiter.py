"""
api/limiter.py -- Shared slowapi rate limiter instance for operator routes.

Imported by api/main.py (to mount as middleware) and api/routes/v1/auth.py
(to limit POST /auth/login with @limiter.limit()).

This in-memory, per-process limiter only protects operator login. Device
provisioning limits must hold across workers, so they live in the database
(throttle/store.py) instead.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
