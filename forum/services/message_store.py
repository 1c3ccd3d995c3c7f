from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional
import logging

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from forum.core import config
from forum.core.errors import StorageError
from forum.models.chat import ChatMessage

logger = logging.getLogger(__name__)


class MessageStore:
    """SQL persistence for chat messages.

    Every call opens and closes its own session, so one store can be shared by
    any number of websocket tasks running their I/O in the threadpool.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def save(self, message: ChatMessage) -> ChatMessage:
        if not message.content:
            raise StorageError("message content must not be empty")
        if message.created_at is None or message.expires_at is None:
            raise StorageError("created_at and expires_at must be set before saving")
        if message.expires_at <= message.created_at:
            raise StorageError("expires_at must be after created_at")

        db = self._session_factory()
        try:
            db.add(message)
            db.flush()
            # detach before commit so the attributes are not expired
            db.expunge(message)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"failed to save chat message: {e}") from e
        finally:
            db.close()
        return message

    def get_recent(self, limit: int, now: Optional[datetime] = None) -> List[ChatMessage]:
        """Up to *limit* live messages, newest first."""
        if limit <= 0:
            return []
        now = now or datetime.now(timezone.utc)
        db = self._session_factory()
        try:
            rows = (
                db.execute(
                    select(ChatMessage)
                    .where(ChatMessage.expires_at > now)
                    .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
                    .limit(limit)
                )
                .scalars()
                .all()
            )
            db.expunge_all()
            return list(rows)
        except SQLAlchemyError as e:
            raise StorageError(f"failed to load recent chat messages: {e}") from e
        finally:
            db.close()

    def delete_expired(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        db = self._session_factory()
        try:
            result = db.execute(
                delete(ChatMessage).where(ChatMessage.expires_at <= now)
            )
            db.commit()
            return result.rowcount or 0
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"failed to delete expired chat messages: {e}") from e
        finally:
            db.close()


class ChatService:
    """Thin layer over the store that fills in a default TTL."""

    def __init__(self, store: MessageStore,
                 default_ttl: timedelta = timedelta(hours=config.CHAT_DEFAULT_TTL_HOURS)):
        self.store = store
        self.default_ttl = default_ttl

    def save_message(self, message: ChatMessage) -> ChatMessage:
        if message.created_at is None:
            message.created_at = datetime.now(timezone.utc)
        if message.expires_at is None:
            message.expires_at = message.created_at + self.default_ttl
        return self.store.save(message)

    def get_recent_messages(self, limit: int = config.CHAT_BACKLOG_LIMIT) -> List[ChatMessage]:
        return self.store.get_recent(limit)

    def delete_expired_messages(self) -> int:
        removed = self.store.delete_expired()
        if removed:
            logger.info("Expired chat messages removed", extra={"count": removed})
        return removed
