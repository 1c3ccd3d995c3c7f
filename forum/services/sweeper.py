import asyncio
import logging

import sentry_sdk
from starlette.concurrency import run_in_threadpool

from forum.core import config
from forum.core.errors import StorageError
from forum.services.message_store import ChatService

logger = logging.getLogger(__name__)


async def sweep_once(service: ChatService) -> int:
    try:
        return await run_in_threadpool(service.delete_expired_messages)
    except StorageError as e:
        sentry_sdk.capture_exception(e)
        logger.error("Expired message sweep failed", extra={"error": str(e)})
        return 0


async def run_sweeper(service: ChatService,
                      interval: float = config.CHAT_SWEEP_INTERVAL_SECONDS) -> None:
    """Delete expired chat rows every *interval* seconds until cancelled."""
    logger.info("Chat expiry sweeper started", extra={"interval": interval})
    try:
        while True:
            await asyncio.sleep(interval)
            await sweep_once(service)
    finally:
        logger.info("Chat expiry sweeper stopped")


def start_sweeper(service: ChatService, interval: float = config.CHAT_SWEEP_INTERVAL_SECONDS) -> asyncio.Task:
    return asyncio.create_task(run_sweeper(service, interval), name="chat-expiry-sweeper")
