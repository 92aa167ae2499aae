from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from ridehail.actors import Actor, AdminActor, CaptainActor, RiderActor
from ridehail.config import get_settings
from ridehail.errors import Unauthorized

settings = get_settings()
bearer_scheme = HTTPBearer(auto_error=False)

_ACTOR_TYPES = {"rider": RiderActor, "captain": CaptainActor, "admin": AdminActor}


def create_access_token(data: dict, expires_minutes: Optional[int] = None) -> str:
    """Sign a JWT with the configured secret. ``role`` defaults to rider when absent."""
    claims = dict(data)
    minutes = expires_minutes or settings.access_token_expire_minutes
    claims.setdefault("exp", datetime.now(timezone.utc) + timedelta(minutes=minutes))
    return jwt.encode(claims, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Actor:
    """Resolve a raw JWT into an actor; raises ValueError on anything malformed."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise ValueError("Invalid or expired token") from exc
    subject = payload.get("sub")
    actor_type = _ACTOR_TYPES.get(payload.get("role", "rider"))
    if not subject or actor_type is None:
        raise ValueError("Invalid token payload")
    return actor_type(id=str(subject))


async def get_current_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Actor:
    """Decode and validate the JWT Bearer token."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return decode_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_rider(actor: Actor = Depends(get_current_actor)) -> RiderActor:
    if not isinstance(actor, RiderActor):
        raise Unauthorized("Rider access required")
    return actor


async def get_current_captain(actor: Actor = Depends(get_current_actor)) -> CaptainActor:
    if not isinstance(actor, CaptainActor):
        raise Unauthorized("Captain access required")
    return actor


async def get_current_admin(actor: Actor = Depends(get_current_actor)) -> AdminActor:
    if not isinstance(actor, AdminActor):
        raise Unauthorized("Admin access required")
    return actor
