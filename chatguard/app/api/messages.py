"""Chat message endpoints."""

import asyncio
from typing import Any, Optional

from fastapi import APIRouter, Path, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from chatguard.app.api.deps import ChatServiceDep, RateLimiterDep, SessionIdDep
from chatguard.app.core.context import ClientContext, set_client_context
from chatguard.app.core.logging import get_log_context, get_logger
from chatguard.app.middleware.session_id import SESSION_HEADER, normalize_session_id

router = APIRouter(prefix="/v1", tags=["messages"])
logger = get_logger(__name__)

ChannelPath = Path(..., min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_-]+$")


class SendMessageRequest(BaseModel):
    """Request body for posting a message.

    `content` is deliberately unconstrained here: length and shape are the
    content validator's job, which reports its own error kinds.
    """
    username: str = Field(..., min_length=1, max_length=64)
    content: Any = None
    reply_to_message_id: Optional[str] = Field(default=None, max_length=64)


@router.post("/channels/{channel}/messages", status_code=201)
async def send_message(
    body: SendMessageRequest,
    chat: ChatServiceDep,
    session_id: SessionIdDep,
    channel: str = ChannelPath,
) -> dict[str, Any]:
    message = await chat.send_message(
        session_id=session_id,
        channel=channel,
        username=body.username.strip(),
        raw_content=body.content,
        reply_to=body.reply_to_message_id,
    )
    return message.to_dict()


@router.get("/channels/{channel}/messages")
async def list_messages(
    chat: ChatServiceDep,
    channel: str = ChannelPath,
) -> dict[str, Any]:
    messages = await chat.list_messages(channel)
    return {
        "channel": channel,
        "messages": [m.to_dict() for m in messages],
    }


@router.websocket("/channels/{channel}/stream")
async def stream_messages(websocket: WebSocket, channel: str = ChannelPath) -> None:
    """Push a fresh ordered snapshot of the channel after every change.

    A malformed channel name closes the socket with 1008 before accept.
    """
    chat = websocket.app.state.chat_service
    session_id = normalize_session_id(
        websocket.headers.get(SESSION_HEADER) or websocket.query_params.get("session_id")
    )
    set_client_context(ClientContext(session_id=session_id, path=websocket.url.path))

    await websocket.accept()
    logger.info(
        f"Stream opened for channel {channel}",
        extra=get_log_context(session_id=session_id, operation="stream_messages"),
    )

    async def pump() -> None:
        async for snapshot in chat.stream_messages(channel):
            await websocket.send_json({
                "channel": channel,
                "messages": [m.to_dict() for m in snapshot],
            })

    pump_task = asyncio.create_task(pump())
    try:
        # Clients never send data; reading only detects the disconnect.
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info(
            f"Stream closed for channel {channel}",
            extra=get_log_context(session_id=session_id, operation="stream_messages"),
        )
    finally:
        pump_task.cancel()
        try:
            await pump_task
        except (asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
            pass


@router.post("/messages/{message_id}/report")
async def report_message(
    message_id: str,
    chat: ChatServiceDep,
) -> dict[str, Any]:
    message = await chat.report_message(message_id)
    return {
        "id": message.id,
        "reported": message.reported,
        "report_count": message.report_count,
    }


@router.get("/rate-limit")
async def rate_limit_status(
    rate_limiter: RateLimiterDep,
    session_id: SessionIdDep,
) -> dict[str, Any]:
    retry_after = rate_limiter.peek(session_id)
    return {
        "session_id": session_id,
        "in_cooldown": retry_after > 0,
        "retry_after": retry_after,
    }
