"""Bearer token helpers and the explicit actor identity passed into core operations."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from jose import JWTError, jwt

from circlekit.core.settings import settings


@dataclass(frozen=True)
class Actor:
    """Identity of the user on whose behalf an operation runs.

    Core services never read a process-wide "current user"; callers decode the
    session once per request and hand the resulting actor down explicitly.
    """

    user_id: str


class InvalidTokenError(ValueError):
    """Raised when a bearer token cannot be decoded into an actor."""


def create_access_token(user_id: str, extra_claims: dict[str, str] | None = None) -> str:
    """Create a signed JWT whose subject is the profile id."""
    to_encode: dict[str, object] = {"sub": user_id}
    if extra_claims:
        to_encode.update(extra_claims)
    expire = datetime.now(UTC) + timedelta(minutes=settings.access_token_expire_minutes)
    to_encode["exp"] = expire
    encoded_jwt: str = jwt.encode(
        to_encode,
        settings.secret_key,
        algorithm=settings.jwt_algorithm,
    )
    return encoded_jwt


def decode_access_token(token: str) -> Actor:
    """Decode a bearer token into an :class:`Actor`.

    Raises:
        InvalidTokenError: If the signature, expiry or subject is invalid.
    """
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError as err:
        raise InvalidTokenError("Could not validate credentials") from err

    subject = payload.get("sub")
    if not subject or not isinstance(subject, str):
        raise InvalidTokenError("Could not validate credentials")
    return Actor(user_id=subject)
