"""Middleware package for chatguard."""

from chatguard.app.middleware.attestation import AttestationMiddleware
from chatguard.app.middleware.rate_limit import SubmissionRateLimiter
from chatguard.app.middleware.session_id import SessionIdMiddleware, get_request_session_id

__all__ = [
    "AttestationMiddleware",
    "SubmissionRateLimiter",
    "SessionIdMiddleware",
    "get_request_session_id",
]
