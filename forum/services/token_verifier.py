import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from forum.core import config
from forum.core.errors import AuthRejected, AuthTransportFailure

logger = logging.getLogger(__name__)

VERIFY_PATH = "/api/auth/verify"


@dataclass(frozen=True)
class Identity:
    user_id: int
    username: str


class TokenVerifier:
    """Client for the auth service's token verification endpoint.

    One attempt per call, no caching. The whole round trip is bounded by
    ``timeout`` seconds; a hung authority surfaces as ``AuthTransportFailure``.
    """

    def __init__(
        self,
        base_url: str = config.AUTH_SERVICE_URL,
        timeout: float = config.VERIFY_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def verify(self, token: str) -> Identity:
        if not token:
            raise AuthRejected("Missing token")
        try:
            resp = await asyncio.wait_for(
                self._client.post(f"{self.base_url}{VERIFY_PATH}", json={"token": token}),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error("Token verification timed out", extra={"timeout": self.timeout})
            raise AuthTransportFailure(f"auth service did not answer within {self.timeout}s") from e
        except httpx.HTTPError as e:
            logger.error("Token verification request failed", exc_info=e)
            raise AuthTransportFailure(f"auth service unreachable: {e}") from e

        if resp.status_code != 200:
            logger.warning("Token rejected", extra={"status_code": resp.status_code})
            raise AuthRejected("Invalid token", status_code=resp.status_code)

        return self._parse_identity(resp)

    @staticmethod
    def _parse_identity(resp: httpx.Response) -> Identity:
        try:
            body = resp.json()
            user_id = int(body["user_id"])
            username = body["username"]
        except (ValueError, KeyError, TypeError) as e:
            logger.error("Malformed verification response", exc_info=e)
            raise AuthTransportFailure("malformed verification response") from e
        if not isinstance(username, str) or not username:
            raise AuthTransportFailure("verification response has no username")
        return Identity(user_id=user_id, username=username)
