from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from jose import JWTError
import sentry_sdk

from forum.models.schemas import UserCreate, Token, UserOut, RefreshIn, VerifyIn, VerifyOut
from forum.core.database import get_db
from forum.models.user import User as UserModel
from forum.core.security import (
    get_password_hash,
    verify_password,
    create_access_token,
    get_current_user,
    create_refresh_token,
    decode_token,
    is_token_revoked,
    resolve_token_user,
    revoke_token,
    oauth2_scheme,
)
import logging
logger = logging.getLogger(__name__)

router = APIRouter()

def unauthorized(detail: str):
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _user_out(user: UserModel) -> UserOut:
    return UserOut(
        id=user.id,
        username=user.username,
        email=user.email,
        role=user.role.value if hasattr(user.role, "value") else user.role,
    )


@router.post("/register", status_code=201)
def register(user: UserCreate, db: Session = Depends(get_db)):
    logger.info("Register attempt", extra={"username": user.username})

    # early check; the unique constraints still guard the race
    existing = (
        db.query(UserModel)
          .filter(or_(UserModel.username == user.username, UserModel.email == user.email))
          .first()
    )
    if existing:
        detail = "Username already exists" if existing.username == user.username else "Email already exists"
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail,
        )

    new_user = UserModel(
        username=user.username,
        email=user.email,
        hashed_password=get_password_hash(user.password),
    )
    db.add(new_user)

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Username already exists",
        )
    except Exception as e:
        sentry_sdk.capture_exception(e)
        logger.exception("DB commit failed", extra={"username": user.username})
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database error",
        )

    db.refresh(new_user)
    logger.info("User registered", extra={"username": new_user.username, "user_id": new_user.id})
    return {"message": "User registered successfully"}

@router.post("/login", response_model=Token)
def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db),
):
    logger.info("Login attempt", extra={"username": form_data.username})
    user = db.query(UserModel).filter_by(username=form_data.username).first()
    if not user or not verify_password(form_data.password, user.hashed_password):
        logger.warning("Failed login", extra={"username": form_data.username})
        raise HTTPException(status_code=400, detail="Invalid username or password")

    logger.info("Login success", extra={"username": user.username})
    access = create_access_token(user)
    refresh = create_refresh_token(user)
    return {"access_token": access, "refresh_token": refresh, "token_type": "bearer"}

@router.get("/me", response_model=UserOut)
def me(current_user: UserModel = Depends(get_current_user)):
    logger.info("User info requested", extra={"username": current_user.username})
    return _user_out(current_user)

@router.post("/refresh", response_model=Token)
def refresh_token(payload: RefreshIn, db: Session = Depends(get_db)):
    logger.info("Refresh token request")
    try:
        data = decode_token(payload.refresh_token, expected_type="refresh")
    except JWTError as e:
        logger.warning("Refresh token decode failed", extra={"error": str(e)})
        unauthorized("Invalid refresh token")

    jti = data.get("jti")
    if not jti or is_token_revoked(jti, db):
        logger.warning("Refresh token already revoked", extra={"jti": jti})
        unauthorized("Refresh token revoked")

    user = db.get(UserModel, int(data["sub"]))
    if user is None:
        unauthorized("User not found")

    new_access = create_access_token(user)
    new_refresh = create_refresh_token(user)
    revoke_token(jti, db, user_id=user.id)
    logger.info("Refresh token granted", extra={"username": user.username})
    return {
        "access_token": new_access,
        "refresh_token": new_refresh,
        "token_type": "bearer",
    }

@router.post("/logout")
def logout(
    current_user: UserModel = Depends(get_current_user),
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
):
    try:
        jti = decode_token(token).get("jti") or token
    except JWTError:
        jti = token

    logger.info("Logout", extra={"username": current_user.username, "jti": jti})
    revoke_token(jti, db, user_id=current_user.id)
    return {"detail": "Token revoked"}

@router.post("/verify", response_model=VerifyOut)
def verify(payload: VerifyIn, db: Session = Depends(get_db)):
    """Token check used by the forum service before admitting a chat session."""
    try:
        user = resolve_token_user(payload.token, db)
    except HTTPException as e:
        unauthorized(e.detail)
    logger.info("Token verified", extra={"username": user.username, "user_id": user.id})
    return VerifyOut(user_id=str(user.id), username=user.username)
