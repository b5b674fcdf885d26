"""
Shared-secret authentication middleware for the orchestrator.

All /cron/* endpoints require a valid X-Worker-Secret header matching
WORKER_SHARED_SECRET. The external timer attaches this header when it
triggers a sweep.
"""

import secrets

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests to /cron/* endpoints."""

    PROTECTED_PREFIX = "/cron"

    def __init__(self, app, secret: str = "", environment: str = "development"):
        super().__init__(app)
        self.secret = secret
        self.environment = environment

    async def dispatch(self, request: Request, call_next):
        if not request.url.path.startswith(self.PROTECTED_PREFIX):
            return await call_next(request)

        if not self.secret:
            # In development without the secret set, allow all traffic
            if self.environment == "development":
                return await call_next(request)
            return JSONResponse(status_code=500, content={"detail": "WORKER_SHARED_SECRET not configured"})

        # Constant-time compare avoids timing attacks
        provided = request.headers.get("X-Worker-Secret", "")
        if not secrets.compare_digest(provided, self.secret):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing worker secret"})

        return await call_next(request)
