"""Per-request client context carried through async call chains.

The session middleware stores the caller's session id, user agent and
origin here; logging and the security event log read them back without
threading the request object through every call.
"""

from contextvars import ContextVar
from dataclasses import dataclass
from typing import Optional

_client_context_var: ContextVar[Optional["ClientContext"]] = ContextVar(
    "client_context", default=None
)


@dataclass(frozen=True)
class ClientContext:
    """Identity of the client that issued the current request.

    Attributes:
        session_id: Opaque per-tab session identifier
        user_agent: Client User-Agent header, if sent
        origin: Client Origin header, if sent
        path: Request path being served
    """

    session_id: str
    user_agent: Optional[str] = None
    origin: Optional[str] = None
    path: Optional[str] = None

    def as_metadata(self) -> dict:
        """Metadata attached to security events."""
        return {
            "session_id": self.session_id,
            "user_agent": self.user_agent,
            "origin": self.origin,
        }


def get_client_context() -> Optional[ClientContext]:
    """Get the client context of the running request, if any."""
    return _client_context_var.get()


def set_client_context(context: Optional[ClientContext]) -> None:
    """Set the client context for the running request.

    Args:
        context: ClientContext to set, or None to clear
    """
    _client_context_var.set(context)
