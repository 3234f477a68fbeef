# backend/app/api/rate_limit.py
"""
Per-client request limits (slowapi).

Counters live in process memory, so each worker enforces its own budget.
The login lockout in AuthService is the durable, cross-process backstop:
it counts audited failures in the database.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from backend.app.core.config import Settings
from backend.app.core.exceptions import RateLimitError

logger = logging.getLogger(__name__)

# Shared buckets: every route using the same scope draws from one counter
AUTH_LIMIT = "5/15minutes"
AUTH_SCOPE = "auth"
SENSITIVE_LIMIT = "3/hour"
SENSITIVE_SCOPE = "sensitive"
UPLOAD_LIMIT = "20/hour"
UPLOAD_SCOPE = "upload"
PUBLIC_SHARE_LIMIT = "30/15minutes"
PUBLIC_SHARE_SCOPE = "public-share"

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")

auth_limit = limiter.shared_limit(AUTH_LIMIT, scope=AUTH_SCOPE)
sensitive_limit = limiter.shared_limit(SENSITIVE_LIMIT, scope=SENSITIVE_SCOPE)
upload_limit = limiter.shared_limit(UPLOAD_LIMIT, scope=UPLOAD_SCOPE)
public_share_limit = limiter.shared_limit(PUBLIC_SHARE_LIMIT, scope=PUBLIC_SHARE_SCOPE)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    logger.warning(f"Rate limit {exc.detail} exceeded by {get_remote_address(request)} "
                   f"on {request.method} {request.url.path}")
    error = RateLimitError()
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def configure_rate_limiting(app: FastAPI, settings: Settings) -> None:
    limiter.enabled = settings.RATE_LIMIT_ENABLED
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
