# app/core/limiter.py

import logging

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.core.config import settings
from app.services.attribution import extract_real_origin

logger = logging.getLogger(__name__)

# --- Key function ---

def key_func(request: Request) -> str:
    """
    Clicks are limited per client address.
    Behind a proxy the forwarded address is used, otherwise the socket peer.
    """
    forwarded = extract_real_origin(request.headers)
    if forwarded:
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)

# --- Limiter ---

limiter = Limiter(
    key_func=key_func,
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
    strategy="moving-window",
)
