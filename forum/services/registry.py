"""Membership of live, authenticated chat sessions and fan-out over them."""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Protocol

from prometheus_client import Counter, Gauge

logger = logging.getLogger(__name__)

CLOSE_TIMEOUT_SECONDS = 10.0

CHAT_ACTIVE_SESSIONS = Gauge(
    "chat_active_sessions",
    "Authenticated websocket sessions currently registered"
)
CHAT_PRUNED_PEERS = Counter(
    "chat_pruned_peers_total",
    "Peers removed from the registry after a failed write"
)


class Peer(Protocol):
    async def send_json(self, payload: dict) -> None: ...

    async def close(self) -> None: ...


class ConnectionRegistry:
    """Set of registered sessions guarded by one exclusive lock.

    Registration, removal and every full iteration hold the same lock, so a
    broadcast never observes a half-applied membership change and a dead peer
    found mid-broadcast is removed without releasing it.
    """

    def __init__(self, close_timeout: float = CLOSE_TIMEOUT_SECONDS):
        self.close_timeout = close_timeout
        self._lock = asyncio.Lock()
        # dict keeps insertion order; values unused
        self._peers: Dict[Peer, None] = {}

    async def register(self, peer: Peer) -> None:
        async with self._lock:
            self._peers[peer] = None
            CHAT_ACTIVE_SESSIONS.set(len(self._peers))

    async def unregister(self, peer: Peer) -> bool:
        async with self._lock:
            if peer not in self._peers:
                return False
            del self._peers[peer]
            CHAT_ACTIVE_SESSIONS.set(len(self._peers))
            return True

    async def for_each_except(
        self,
        sender: Peer,
        fn: Callable[[Peer], Awaitable[None]],
    ) -> int:
        """Apply *fn* to every registered peer but *sender*.

        A peer whose *fn* raises is dropped and closed inside the same pass;
        the remaining peers still get their call. Returns how many succeeded.
        """
        async with self._lock:
            targets = [p for p in self._peers if p is not sender]
            if not targets:
                return 0
            results = await asyncio.gather(
                *(fn(p) for p in targets), return_exceptions=True
            )
            delivered = 0
            for peer, result in zip(targets, results):
                if not isinstance(result, BaseException):
                    delivered += 1
                    continue
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.warning(
                    "Dropping chat peer after failed write",
                    extra={"peer": repr(peer), "error": repr(result)},
                )
                self._peers.pop(peer, None)
                CHAT_PRUNED_PEERS.inc()
                try:
                    # bounded: the lock is still held
                    await asyncio.wait_for(peer.close(), timeout=self.close_timeout)
                except asyncio.TimeoutError:
                    logger.warning(
                        "Closing dead chat peer timed out",
                        extra={"peer": repr(peer), "timeout": self.close_timeout},
                    )
                except Exception as e:
                    logger.debug("Closing dead peer failed", exc_info=e)
            CHAT_ACTIVE_SESSIONS.set(len(self._peers))
            return delivered

    async def broadcast(self, sender: Peer, payload: dict) -> int:
        async def _send(peer: Peer) -> None:
            await peer.send_json(payload)

        return await self.for_each_except(sender, _send)

    def __len__(self) -> int:
        return len(self._peers)

    def __contains__(self, peer) -> bool:
        return peer in self._peers

    def count(self) -> int:
        return len(self._peers)
