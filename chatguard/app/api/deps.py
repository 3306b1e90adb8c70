"""FastAPI dependencies.

The services are built once in the application lifespan and stored on
app.state; endpoints reach them through these dependencies so tests can
swap in isolated instances.
"""

import hmac
from typing import Annotated

from fastapi import Depends, HTTPException, Request

from chatguard.app.core.config import settings
from chatguard.app.middleware.attestation import AttestationMiddleware
from chatguard.app.middleware.rate_limit import SubmissionRateLimiter
from chatguard.app.middleware.session_id import get_request_session_id
from chatguard.app.services.chat import ChatService


def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat_service


def get_rate_limiter(request: Request) -> SubmissionRateLimiter:
    return request.app.state.rate_limiter


def get_attestation(request: Request) -> AttestationMiddleware:
    return request.app.state.attestation


def get_bearer_token(request: Request) -> str | None:
    """Extract Bearer token from Authorization header."""
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.replace("Bearer ", "", 1).strip()


def require_admin(request: Request) -> str:
    """Validate the admin token for maintenance endpoints.

    Raises:
        HTTPException: 503 if no admin token is configured, 401 if the
            presented token is missing or wrong
    """
    config = getattr(request.app.state, "settings", settings)
    expected_token = config.admin_token.strip()
    if not expected_token:
        raise HTTPException(status_code=503, detail="Admin token is not configured")

    # Always compare so a missing token takes as long as a wrong one
    token = get_bearer_token(request) or ""
    if not hmac.compare_digest(token.encode(), expected_token.encode()):
        raise HTTPException(status_code=401, detail="Invalid or missing admin token")
    return "admin"


ChatServiceDep = Annotated[ChatService, Depends(get_chat_service)]
RateLimiterDep = Annotated[SubmissionRateLimiter, Depends(get_rate_limiter)]
AttestationDep = Annotated[AttestationMiddleware, Depends(get_attestation)]
SessionIdDep = Annotated[str, Depends(get_request_session_id)]
