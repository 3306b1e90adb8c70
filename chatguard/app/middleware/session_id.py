"""Session identity middleware.

Each browser tab identifies itself with an opaque session id sent in the
X-Session-ID header. The id is the rate limiting key and is stamped on
log records and security events through the client context.
"""

import re
import uuid
from typing import Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from chatguard.app.core.context import ClientContext, set_client_context

SESSION_HEADER = "X-Session-ID"
_SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.:-]{1,128}$")


def normalize_session_id(raw: Optional[str]) -> str:
    """Return `raw` if it is a usable session id, otherwise a new one."""
    if raw and _SESSION_ID_PATTERN.match(raw):
        return raw
    return str(uuid.uuid4())


class SessionIdMiddleware(BaseHTTPMiddleware):
    """Attach a session id and client context to every HTTP request.

    The session id is:
    1. Taken from the X-Session-ID header if present and well formed
    2. Generated as UUID otherwise
    3. Added to request.state for access in endpoints
    4. Returned in the X-Session-ID response header
    """

    def __init__(self, app, header_name: str = SESSION_HEADER):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        session_id = normalize_session_id(request.headers.get(self.header_name))
        request.state.session_id = session_id

        set_client_context(ClientContext(
            session_id=session_id,
            user_agent=request.headers.get("User-Agent"),
            origin=request.headers.get("Origin"),
            path=request.url.path,
        ))
        try:
            response = await call_next(request)
        finally:
            set_client_context(None)

        response.headers[self.header_name] = session_id
        return response


def get_request_session_id(request: Request) -> str:
    """Get the session id from request state."""
    session_id = getattr(request.state, "session_id", None)
    if session_id is None:
        session_id = normalize_session_id(request.headers.get(SESSION_HEADER))
        request.state.session_id = session_id
    return session_id
