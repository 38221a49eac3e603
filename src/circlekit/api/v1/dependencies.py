"""Shared API dependencies for authentication and common functionality."""

import logging
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from circlekit.core.security import Actor, InvalidTokenError, decode_access_token
from circlekit.db.session import get_db, unit_of_work
from circlekit.models import Profile
from circlekit.services.storage import BlobStore, build_blob_store

logger = logging.getLogger(__name__)

# HTTP Bearer scheme for JWT authentication
bearer_scheme = HTTPBearer()

# Type alias for database session dependency
SessionDep = Annotated[AsyncSession, Depends(get_db)]


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
    db: SessionDep,
) -> Actor:
    """Decode the bearer token into the acting user.

    The auth provider owns accounts; a profile row is created on first sight
    of a subject so that memberships and posts can reference it.

    Raises:
        HTTPException: If the token is invalid or expired.
    """
    try:
        actor = decode_access_token(credentials.credentials)
    except InvalidTokenError as err:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        ) from err

    if await db.get(Profile, actor.user_id) is None:
        async with unit_of_work(db, "create profile"):
            db.add(Profile(id=actor.user_id))
        logger.info("Created profile for %s", actor.user_id)
    return actor


def get_blob_store() -> BlobStore:
    """Return the configured media store."""
    return build_blob_store()


# Type alias for current actor dependency
CurrentActorDep = Annotated[Actor, Depends(get_current_actor)]
BlobStoreDep = Annotated[BlobStore, Depends(get_blob_store)]
