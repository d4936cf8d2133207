"""
auth/dependencies.py -- FastAPI Depends() helper for webhook authentication.

CI pipelines authenticate with a static shared secret sent in the
X-Webhook-Secret header. The expected value is WEBHOOK_SECRET from Settings,
read from app.state so tests can wire their own settings object.

  WEBHOOK_SECRET unset -> 500 (service misconfigured, nobody gets in)
  header missing       -> AuthenticationError
  header mismatch      -> AuthenticationError

api/main.py turns AuthenticationError into a generic 401 so the response
never says which of the two happened.

The comparison uses hmac.compare_digest so response time does not reveal how
many leading characters of a guess were correct.

Layer rule: no imports from api/, inventory/, or provisioning/. core/ is allowed.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import hmac
import logging

from fastapi import HTTPException, Request

from core.errors import AuthenticationError

logger = logging.getLogger("cardinal.auth")

WEBHOOK_SECRET_HEADER = "X-Webhook-Secret"


def secrets_match(provided: str, expected: str) -> bool:
    """Constant-time comparison of two shared secrets."""
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def require_webhook_secret(request: Request) -> None:
    """Reject the request unless it carries the configured webhook secret.

    Use as a router-level dependency:
        router = APIRouter(dependencies=[Depends(require_webhook_secret)])
    """
    expected: str = request.app.state.settings.webhook_secret
    client = request.client.host if request.client else "unknown"

    if not expected:
        logger.warning("WEBHOOK_SECRET not configured")
        raise HTTPException(
            status_code=500,
            detail={"code": "auth_not_configured", "message": "Webhook authentication not configured."},
        )

    provided = request.headers.get(WEBHOOK_SECRET_HEADER, "")
    if not provided:
        logger.warning("Webhook request without secret from %s", client)
        raise AuthenticationError("Webhook secret required.")

    if not secrets_match(provided, expected):
        logger.warning("Invalid webhook secret from %s", client)
        raise AuthenticationError("Invalid webhook secret.")

    logger.info("Webhook request authenticated: %s %s from %s", request.method, request.url.path, client)
