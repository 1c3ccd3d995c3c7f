from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from starlette.requests import HTTPConnection

from forum.core.errors import AuthRejected, AuthTransportFailure
from forum.services.message_store import MessageStore
from forum.services.registry import ConnectionRegistry
from forum.services.token_verifier import Identity, TokenVerifier

security = HTTPBearer(auto_error=False)


def get_registry(conn: HTTPConnection) -> ConnectionRegistry:
    return conn.app.state.registry


def get_message_store(conn: HTTPConnection) -> MessageStore:
    return conn.app.state.message_store


def get_token_verifier(conn: HTTPConnection) -> TokenVerifier:
    return conn.app.state.token_verifier


async def get_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    verifier: TokenVerifier = Depends(get_token_verifier),
) -> Identity:
    if not credentials or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Missing or invalid token")
    try:
        return await verifier.verify(credentials.credentials)
    except AuthRejected:
        raise HTTPException(status_code=401, detail="Invalid token")
    except AuthTransportFailure:
        raise HTTPException(status_code=503, detail="Auth service unavailable")
