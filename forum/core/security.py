from passlib.context import CryptContext
from jose import jwt, JWTError
from datetime import datetime, timedelta, timezone
from fastapi import Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session
from forum.core import config
from forum.core.database import get_db
from forum.models.user import User as UserModel
from forum.models.revoked import RevokedToken
import uuid
import sentry_sdk
from fastapi import status

import logging

logger = logging.getLogger(__name__)

SECRET_KEY = config.SECRET_KEY
ALGORITHM = config.ALGORITHM
ACCESS_TOKEN_EXPIRE_MINUTES = config.ACCESS_TOKEN_EXPIRE_MINUTES
REFRESH_EXPIRE_MINUTES = config.REFRESH_EXPIRE_MINUTES

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def _encode(user: UserModel, token_type: str, expires_delta: timedelta) -> str:
    now = datetime.now(timezone.utc)
    to_encode = {
        "sub": str(user.id),
        "username": user.username,
        "role": user.role.value if hasattr(user.role, "value") else user.role,
        "type": token_type,
        "iat": now,
        "exp": now + expires_delta,
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def create_access_token(
    user: UserModel,
    expires_delta: timedelta = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES),
) -> str:
    return _encode(user, "access", expires_delta)


def create_refresh_token(
    user: UserModel,
    expires_delta: timedelta = timedelta(minutes=REFRESH_EXPIRE_MINUTES),
) -> str:
    return _encode(user, "refresh", expires_delta)


def decode_token(token: str, expected_type: str = "access") -> dict:
    """Decode and validate a token; raises JWTError on any problem."""
    payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    if payload.get("type") != expected_type:
        raise JWTError(f"expected a {expected_type} token")
    if not payload.get("sub"):
        raise JWTError("token has no subject")
    return payload


def resolve_token_user(token: str, db: Session) -> UserModel:
    """The live, non-revoked user behind an access token, or 401."""
    try:
        payload = decode_token(token)
    except JWTError as e:
        logger.warning("Token decode error", extra={"error": str(e)})
        raise HTTPException(status_code=401, detail="Invalid token")

    jti = payload.get("jti")
    if is_token_revoked(jti, db):
        logger.warning("Token revoked", extra={"jti": jti})
        raise HTTPException(status_code=401, detail="Token has been revoked")

    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token")

    user = db.get(UserModel, user_id)
    if user is None:
        logger.warning("User not found for token", extra={"user_id": user_id})
        raise HTTPException(status_code=401, detail="User not found")
    return user


def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> UserModel:
    logger.debug("Validating token", extra={"token": token[:8] + "...",})
    user = resolve_token_user(token, db)
    logger.info("Authenticated user", extra={"username": user.username})
    return user


def revoke_token(jti: str, db: Session, user_id: int | None = None):
    if not db.query(RevokedToken).filter_by(jti=jti).first():
        db.add(RevokedToken(jti=jti, user_id=user_id))
        try:
            db.commit()
        except Exception as e:
            sentry_sdk.capture_exception(e)
            db.rollback()
            raise


def is_token_revoked(jti: str | None, db: Session) -> bool:
    if not jti:
        return False
    return db.query(RevokedToken).filter_by(jti=jti).first() is not None

def require_roles(*allowed_roles: str):

    def role_checker(current_user: UserModel = Depends(get_current_user)):
        role = current_user.role.value if hasattr(current_user.role, "value") else current_user.role
        if role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Operation not permitted",
            )
        return current_user
    return Depends(role_checker)
