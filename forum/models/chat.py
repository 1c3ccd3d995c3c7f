from datetime import datetime, timezone
from sqlalchemy import Column, Integer, BigInteger, String, Text, DateTime, Index
from sqlalchemy.types import TypeDecorator
from forum.core.database import Base


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every backend.

    SQLite drops the offset on write, so values are normalised to UTC going in
    and re-tagged as UTC coming out.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class ChatMessage(Base):
    """One ephemeral chat line. Never updated; removed by the expiry sweep."""
    __tablename__ = "chat_messages"

    id              = Column(Integer, primary_key=True)
    content         = Column(Text, nullable=False)
    author_id       = Column(BigInteger().with_variant(Integer, "sqlite"), nullable=False)
    author_username = Column(String(255), nullable=False)
    created_at      = Column(UTCDateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
    expires_at      = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index("idx_chat_messages_created_at", "created_at"),
        Index("idx_chat_messages_expires_at", "expires_at"),
        Index("idx_chat_messages_author_id", "author_id"),
    )

    @property
    def timestamp(self) -> int:
        """Unix seconds of ``created_at``; what clients use as a watermark."""
        return int(self.created_at.timestamp())

    @property
    def wire_id(self) -> str:
        created = self.created_at
        nanos = int(created.timestamp()) * 1_000_000_000 + created.microsecond * 1_000
        return f"{self.author_id}:{nanos}"

    def is_live(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.expires_at > now

    def __repr__(self) -> str:
        return f"<ChatMessage id={self.id} author={self.author_username!r} created_at={self.created_at}>"
