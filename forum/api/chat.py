from fastapi import APIRouter, Depends, HTTPException, WebSocket, status
from starlette.concurrency import run_in_threadpool
from typing import List
import logging
import sentry_sdk

from forum.api.deps import get_identity, get_message_store, get_registry, get_token_verifier
from forum.core import config
from forum.core.errors import StorageError
from forum.models.schemas_chat import ChatMessageOut
from forum.services.chat_session import ChatSession
from forum.services.message_store import ChatService, MessageStore
from forum.services.registry import ConnectionRegistry
from forum.services.token_verifier import Identity, TokenVerifier

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Chat"])


@router.get("/api/v1/chat/messages", response_model=List[ChatMessageOut])
async def recent_messages(
    identity: Identity = Depends(get_identity),
    store: MessageStore = Depends(get_message_store),
):
    try:
        return await run_in_threadpool(ChatService(store).get_recent_messages, config.CHAT_BACKLOG_LIMIT)
    except StorageError as e:
        sentry_sdk.capture_exception(e)
        logger.error("Loading recent messages failed", extra={"username": identity.username, "error": str(e)})
        raise HTTPException(500, "Failed to load messages")


@router.websocket("/ws")
async def chat_socket(
    websocket: WebSocket,
    registry: ConnectionRegistry = Depends(get_registry),
    store: MessageStore = Depends(get_message_store),
    verifier: TokenVerifier = Depends(get_token_verifier),
):
    origin = websocket.headers.get("origin")
    if origin and origin not in config.CORS_ORIGINS:
        logger.warning("Rejected websocket origin", extra={"origin": origin})
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    session = ChatSession(websocket, registry=registry, store=store, verifier=verifier)
    await session.run()
