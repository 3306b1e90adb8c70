"""Chat write path.

ChatService ties the three admission layers to the message store:

    raw body -> sanitize -> rate gate -> validate -> record slot
             -> attestation (if enforced) -> store.append_record

A submission is rejected by the first layer that refuses it. A body with
no text after markup stripping is refused before the rate gate is even
consulted. The rate gate runs before validation, but the burst slot is
only consumed once the content has been accepted, so editing a refused
draft costs nothing.
"""

from datetime import timedelta
from typing import Any, AsyncIterator, NoReturn, Optional

from chatguard.app.core.logging import get_log_context, get_logger
from chatguard.app.exceptions import (
    ChatGuardException,
    ContentRejectedError,
    MessageNotFoundError,
    RateLimitedError,
    StorageWriteError,
)
from chatguard.app.middleware.attestation import AttestationMiddleware
from chatguard.app.middleware.rate_limit import SubmissionRateLimiter
from chatguard.app.services.content_validator import (
    DEFAULT_OPTIONS,
    MessageValidationOptions,
    ValidationResult,
    sanitize_submission,
    validate_message,
)
from chatguard.app.services.message_store import ChatMessage, MessageStore, utcnow

logger = get_logger(__name__)

DEFAULT_MESSAGE_TTL_HOURS = 24
DEFAULT_REPORT_THRESHOLD = 2


class ChatService:
    """Admission-checked access to chat channels."""

    def __init__(
        self,
        store: MessageStore,
        rate_limiter: SubmissionRateLimiter,
        attestation: AttestationMiddleware,
        validator_options: MessageValidationOptions = DEFAULT_OPTIONS,
        attestation_enforced: bool = True,
        message_ttl_hours: int = DEFAULT_MESSAGE_TTL_HOURS,
        report_threshold: int = DEFAULT_REPORT_THRESHOLD,
    ) -> None:
        self.store = store
        self.rate_limiter = rate_limiter
        self.attestation = attestation
        self.validator_options = validator_options
        self.attestation_enforced = attestation_enforced
        self.message_ttl = timedelta(hours=message_ttl_hours)
        self.report_threshold = report_threshold

    @classmethod
    def from_settings(
        cls,
        settings,
        store: MessageStore,
        rate_limiter: SubmissionRateLimiter,
        attestation: AttestationMiddleware,
    ) -> "ChatService":
        return cls(
            store=store,
            rate_limiter=rate_limiter,
            attestation=attestation,
            validator_options=MessageValidationOptions.from_settings(settings),
            attestation_enforced=settings.attestation_enforced,
            message_ttl_hours=settings.message_ttl_hours,
            report_threshold=settings.report_threshold,
        )

    async def send_message(
        self,
        session_id: str,
        channel: str,
        username: str,
        raw_content: Any,
        reply_to: Optional[str] = None,
    ) -> ChatMessage:
        """Admit and persist one message.

        Args:
            session_id: Submitting session, the rate limiting key
            channel: Target channel
            username: Display name of the author
            raw_content: Message body as received from the client
            reply_to: Id of the message being replied to, if any

        Returns:
            The stored message, carrying the normalized body

        Raises:
            RateLimitedError: Session is cooling down or just tripped the burst limit
            ContentRejectedError: Body failed content admission
            MessageNotFoundError: Reply target does not exist in the channel
            EnforcementError: No valid attestation token could be obtained
            StorageWriteError: The store refused the write
        """
        async with self.rate_limiter.session_lock(session_id):
            sanitized = sanitize_submission(raw_content)
            if not sanitized.is_valid:
                self._reject(session_id, sanitized)

            ticket = self.rate_limiter.check(session_id)
            if not ticket.decision.allowed:
                raise RateLimitedError(ticket.decision.retry_after or 0)

            result = validate_message(sanitized.normalized_message, self.validator_options)
            if not result.is_valid:
                self._reject(session_id, result)

            fields = {
                "channel": channel,
                "username": username,
                "content": result.normalized_message,
            }
            if reply_to:
                target = await self.store.get_record(reply_to)
                if target is None or target.channel != channel:
                    raise MessageNotFoundError(reply_to)
                fields.update(
                    reply_to_message_id=target.id,
                    reply_to_content=target.content,
                    reply_to_username=target.username,
                )

            self.rate_limiter.record(ticket)

            if self.attestation_enforced:
                await self.attestation.enforce("send_message")

            now = utcnow()
            fields.update(
                created_at=now,
                expire_at=now + self.message_ttl,
                reported=False,
                report_count=0,
            )
            try:
                message = await self.store.append_record(fields)
            except ChatGuardException:
                raise
            except Exception as e:
                logger.error(
                    f"Message store write failed: {e}",
                    extra=get_log_context(session_id=session_id, operation="send_message"),
                )
                raise StorageWriteError() from e

        logger.info(
            f"Message {message.id} posted to {channel}",
            extra=get_log_context(session_id=session_id, operation="send_message"),
        )
        return message

    @staticmethod
    def _reject(session_id: str, result: ValidationResult) -> NoReturn:
        logger.warning(
            "Message rejected by content validator",
            extra=get_log_context(
                session_id=session_id,
                operation="send_message",
                error_kind=result.error_kind.value,
            ),
        )
        raise ContentRejectedError(result)

    async def report_message(self, message_id: str) -> ChatMessage:
        """Count one report against a message.

        The message is flagged as reported once its report count reaches
        the configured threshold.
        """
        if await self.store.get_record(message_id) is None:
            raise MessageNotFoundError(message_id)

        if self.attestation_enforced:
            await self.attestation.enforce("report_message")

        message = await self.store.increment_counter_field(message_id, "report_count")
        if not message.reported and message.report_count >= self.report_threshold:
            message = await self.store.update_fields(message_id, {"reported": True})
            logger.info(
                f"Message {message_id} flagged after {message.report_count} reports",
                extra=get_log_context(operation="report_message"),
            )
        return message

    async def list_messages(self, channel: str) -> list[ChatMessage]:
        return await self.store.query_channel(channel)

    def stream_messages(self, channel: str) -> AsyncIterator[list[ChatMessage]]:
        """Live ordered snapshots of a channel, one per change."""
        return self.store.subscribe(channel)
