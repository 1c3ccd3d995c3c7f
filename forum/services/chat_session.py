"""Per-connection chat protocol.

A ``ChatSession`` owns one accepted websocket and runs its read loop:

    unauthenticated --auth ok--> authenticated --read error/close--> closed

Frames from one connection are handled strictly one at a time. Writes to the
socket go through a per-session lock because other sessions fan out into it
concurrently with its own replies.
"""
import asyncio
import enum
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

import sentry_sdk
from fastapi import WebSocket
from prometheus_client import Counter
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from forum.core import config
from forum.core.errors import (
    AuthRejected,
    AuthTransportFailure,
    ProtocolError,
    StorageError,
    TransportError,
)
from forum.models.chat import ChatMessage
from forum.models.schemas_chat import (
    AuthFrame,
    AuthSuccessData,
    AuthSuccessFrame,
    ChatMessageFrame,
    ErrorFrame,
    MessageFrame,
    MessageSentFrame,
    PingFrame,
    PongFrame,
    inbound_adapter,
)
from forum.services.message_store import MessageStore
from forum.services.registry import ConnectionRegistry
from forum.services.token_verifier import Identity, TokenVerifier

logger = logging.getLogger(__name__)

SEND_TIMEOUT_SECONDS = 10.0

ERR_INVALID_TOKEN = "Invalid token"
ERR_NOT_AUTHENTICATED = "You must authenticate first"
ERR_EMPTY_MESSAGE = "Message content must not be empty"
ERR_SAVE_FAILED = "Failed to save message"

CHAT_MESSAGES_SENT = Counter(
    "chat_messages_sent_total",
    "Chat messages persisted and fanned out"
)
CHAT_AUTH_FAILURES = Counter(
    "chat_auth_failures_total",
    "Failed websocket auth attempts",
    ["reason"],
)


class SessionState(str, enum.Enum):
    unauthenticated = "unauthenticated"
    authenticated = "authenticated"
    closed = "closed"


def decode_frame(raw: Union[str, bytes]) -> Union[PingFrame, AuthFrame, MessageFrame]:
    try:
        return inbound_adapter.validate_json(raw)
    except ValidationError as e:
        raise ProtocolError(f"malformed frame: {e.error_count()} error(s)") from e


class ChatSession:

    def __init__(
        self,
        websocket: WebSocket,
        *,
        registry: ConnectionRegistry,
        store: MessageStore,
        verifier: TokenVerifier,
        message_ttl: timedelta = timedelta(minutes=config.CHAT_MESSAGE_TTL_MINUTES),
        backlog_limit: int = config.CHAT_BACKLOG_LIMIT,
        idle_timeout: float = config.WS_IDLE_TIMEOUT_SECONDS,
        send_timeout: float = SEND_TIMEOUT_SECONDS,
    ):
        self.ws = websocket
        self.registry = registry
        self.store = store
        self.verifier = verifier
        self.message_ttl = message_ttl
        self.backlog_limit = backlog_limit
        self.idle_timeout = idle_timeout
        self.send_timeout = send_timeout

        self.state = SessionState.unauthenticated
        self.identity: Optional[Identity] = None
        # unix seconds of the newest message the client says it already has
        self.watermark = 0
        self._send_lock = asyncio.Lock()

    def __repr__(self) -> str:
        who = self.identity.username if self.identity else "-"
        return f"<ChatSession {who} {self.state.value}>"

    @property
    def client(self) -> str:
        c = getattr(self.ws, "client", None)
        return f"{c.host}:{c.port}" if c else "unknown"

    # ------------------------------------------------------------------
    # socket I/O
    # ------------------------------------------------------------------

    async def send_json(self, payload: dict) -> None:
        """Write one frame; any failure surfaces as ``TransportError``."""
        if self.state is SessionState.closed:
            raise TransportError("session is closed")
        async with self._send_lock:
            try:
                await asyncio.wait_for(self.ws.send_json(payload), timeout=self.send_timeout)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                raise TransportError(f"write failed: {e!r}") from e

    async def reply(self, frame) -> bool:
        try:
            await self.send_json(frame.wire())
            return True
        except TransportError as e:
            logger.warning("Reply to chat client failed",
                           extra={"client": self.client, "frame": frame.type, "error": str(e)})
            return False

    async def close(self) -> None:
        if self.state is SessionState.closed:
            return
        self.state = SessionState.closed
        try:
            await self.ws.close()
        except Exception as e:
            logger.debug("Websocket already gone on close", exc_info=e)

    async def _receive(self) -> Optional[Union[str, bytes]]:
        """Next data frame, or None when the connection is over."""
        try:
            message = await asyncio.wait_for(self.ws.receive(), timeout=self.idle_timeout)
        except asyncio.TimeoutError:
            logger.info("Chat client idle, closing", extra={"client": self.client, "timeout": self.idle_timeout})
            return None
        except (RuntimeError, OSError) as e:
            logger.info("Chat read failed", extra={"client": self.client, "error": str(e)})
            return None

        if message["type"] == "websocket.disconnect":
            return None
        if message.get("text") is not None:
            return message["text"]
        if message.get("bytes") is not None:
            return message["bytes"]
        return ""

    # ------------------------------------------------------------------
    # loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        logger.info("Chat client connected", extra={"client": self.client})
        try:
            await self.replay_backlog()
            while self.state is not SessionState.closed:
                raw = await self._receive()
                if raw is None:
                    break
                await self.handle_raw(raw)
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Chat session crashed", extra={"client": self.client})
        finally:
            await self.registry.unregister(self)
            await self.close()
            logger.info(
                "Chat client disconnected",
                extra={
                    "client": self.client,
                    "username": self.identity.username if self.identity else None,
                },
            )

    async def handle_raw(self, raw: Union[str, bytes]) -> None:
        try:
            frame = decode_frame(raw)
        except ProtocolError as e:
            logger.warning("Ignoring malformed chat frame", extra={"client": self.client, "error": str(e)})
            return
        await self.handle(frame)

    async def handle(self, frame) -> None:
        if isinstance(frame, PingFrame):
            await self.reply(PongFrame())
            return

        if frame.last_message_timestamp and frame.last_message_timestamp > 0:
            self.watermark = frame.last_message_timestamp

        if isinstance(frame, AuthFrame):
            await self.handle_auth(frame)
        elif isinstance(frame, MessageFrame):
            await self.handle_message(frame)

    async def handle_auth(self, frame: AuthFrame) -> None:
        logger.info("Processing chat auth", extra={"client": self.client})
        try:
            identity = await self.verifier.verify(frame.token)
        except AuthRejected:
            CHAT_AUTH_FAILURES.labels(reason="rejected").inc()
            logger.warning("Chat auth rejected", extra={"client": self.client})
            await self.reply(ErrorFrame(content=ERR_INVALID_TOKEN))
            return
        except AuthTransportFailure as e:
            CHAT_AUTH_FAILURES.labels(reason="transport").inc()
            logger.error("Chat auth could not reach auth service",
                         extra={"client": self.client, "error": str(e)})
            return

        self.identity = identity
        self.state = SessionState.authenticated
        await self.registry.register(self)
        logger.info("Chat user authenticated",
                    extra={"client": self.client, "username": identity.username, "user_id": identity.user_id})

        if not await self.reply(AuthSuccessFrame(data=AuthSuccessData(username=identity.username))):
            return
        await self.replay_backlog()

    async def handle_message(self, frame: MessageFrame) -> None:
        if self.state is not SessionState.authenticated or self.identity is None:
            await self.reply(ErrorFrame(content=ERR_NOT_AUTHENTICATED))
            return

        content = frame.content
        if not content or not content.strip():
            await self.reply(ErrorFrame(content=ERR_EMPTY_MESSAGE))
            return

        now = datetime.now(timezone.utc)
        message = ChatMessage(
            content=content,
            author_id=self.identity.user_id,
            author_username=self.identity.username,
            created_at=now,
            expires_at=now + self.message_ttl,
        )
        try:
            message = await run_in_threadpool(self.store.save, message)
        except StorageError as e:
            sentry_sdk.capture_exception(e)
            logger.error("Saving chat message failed",
                         extra={"client": self.client, "username": self.identity.username, "error": str(e)})
            await self.reply(ErrorFrame(content=ERR_SAVE_FAILED))
            return

        out = ChatMessageFrame(
            content=message.content,
            author=message.author_username,
            id=message.wire_id,
            timestamp=message.timestamp,
        )
        delivered = await self.registry.broadcast(self, out.wire())
        CHAT_MESSAGES_SENT.inc()
        logger.debug("Chat message fanned out",
                     extra={"message_id": out.id, "delivered": delivered})

        await self.reply(MessageSentFrame(id=out.id, timestamp=out.timestamp))

    async def replay_backlog(self) -> int:
        """Send live messages newer than the watermark, oldest first, to this client only.

        The watermark is left alone: only the client moves it, through
        ``lastMessageTimestamp``. Replays may repeat messages; clients dedupe by id.
        """
        try:
            recent = await run_in_threadpool(self.store.get_recent, self.backlog_limit)
        except StorageError as e:
            logger.error("Loading chat backlog failed", extra={"client": self.client, "error": str(e)})
            return 0

        sent = 0
        for msg in reversed(recent):
            ts = msg.timestamp
            if ts <= self.watermark:
                continue
            frame = ChatMessageFrame(
                content=msg.content,
                author=msg.author_username,
                id=msg.wire_id,
                timestamp=ts,
            )
            try:
                await self.send_json(frame.wire())
            except TransportError as e:
                logger.warning("Backlog replay interrupted", extra={"client": self.client, "error": str(e)})
                break
            sent += 1
        return sent
