from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Header, HTTPException
import jwt

from .config import settings

TOKEN_ISSUER = "geoquiz"


@dataclass(frozen=True)
class AuthContext:
    """Identity of a registered player. Guests are represented by ``None``."""

    player_id: str
    nickname: str
    is_admin: bool = False


def create_access_token(player_id: str, nickname: str, is_admin: bool = False) -> str:
    issued_at = datetime.now(timezone.utc)
    claims = {
        "iss": TOKEN_ISSUER,
        "sub": player_id,
        "nickname": nickname,
        "is_admin": is_admin,
        "iat": issued_at,
        "exp": issued_at + timedelta(minutes=settings.jwt_exp_minutes),
    }
    return jwt.encode(claims, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> AuthContext:
    try:
        claims = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
            issuer=TOKEN_ISSUER,
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(status_code=401, detail="Token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc

    if not claims.get("nickname"):
        raise HTTPException(status_code=401, detail="Malformed token payload")
    return AuthContext(
        player_id=str(claims["sub"]),
        nickname=str(claims["nickname"]),
        is_admin=bool(claims.get("is_admin", False)),
    )


def get_bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Invalid Authorization header")
    return token.strip()


def auth_context_from_header(authorization: Optional[str] = Header(default=None)) -> AuthContext:
    return decode_token(get_bearer_token(authorization))


def optional_auth_context(authorization: Optional[str] = Header(default=None)) -> Optional[AuthContext]:
    # A header that is present but broken is still a 401, never a silent guest.
    if authorization is None:
        return None
    return decode_token(get_bearer_token(authorization))
