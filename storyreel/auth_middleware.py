"""
Shared-secret authentication middleware for the worker.

The /pipeline/* and /generations/* endpoints require an X-Worker-Secret header
matching the configured secret. The web app attaches this header when
forwarding requests to the worker.
"""

import secrets
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware


class PipelineAuthMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests to the protected prefixes."""

    PROTECTED_PREFIXES = ("/pipeline", "/generations")

    def __init__(self, app, secret: Optional[str] = None):
        super().__init__(app)
        self.secret = secret or ""

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if not path.startswith(self.PROTECTED_PREFIXES):
            return await call_next(request)

        # No secret configured: local development, allow all traffic
        if not self.secret:
            return await call_next(request)

        # Constant-time compare
        provided = request.headers.get("X-Worker-Secret", "")
        if not secrets.compare_digest(provided, self.secret):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing worker secret"})

        return await call_next(request)
