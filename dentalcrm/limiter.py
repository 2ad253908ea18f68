# dentalcrm/limiter.py
# Rate limiter instance lives in its own module so routers and main.py
# can both import it without a circular import.

from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import get_settings

limiter = Limiter(key_func=get_remote_address)


def public_rate_limit() -> str:
    return get_settings().public_rate_limit
