from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from chatguard.app.db.base import Base


class ChatMessageRecord(Base):
    __tablename__ = "messages"
    __table_args__ = (
        Index("idx_messages_channel_created", "channel", "created_at"),
        Index("idx_messages_expire_at", "expire_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    channel: Mapped[str] = mapped_column(String(64))
    username: Mapped[str] = mapped_column(String(64))
    content: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    # Swept by the database's own TTL job; readers filter expired rows too.
    expire_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    reported: Mapped[bool] = mapped_column(Boolean, default=False)
    report_count: Mapped[int] = mapped_column(Integer, default=0)

    reply_to_message_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reply_to_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    reply_to_username: Mapped[str | None] = mapped_column(String(64), nullable=True)
