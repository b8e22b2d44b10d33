"""FastAPI dependency injection — data access and the optional bearer token check."""
import os
import logging
from typing import Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from sqlalchemy.ext.asyncio import AsyncSession
from twinforge.db import get_db
from twinforge.services.archetype_repository import ArchetypeRepository
from twinforge.services.persistence import ScanStore

logger = logging.getLogger("twinforge-api")

ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_AUDIENCE = os.getenv("SUPABASE_JWT_AUDIENCE", "authenticated")

security = HTTPBearer(auto_error=False)


def get_archetype_repository(db: AsyncSession = Depends(get_db)) -> ArchetypeRepository:
    return ArchetypeRepository(db)


def get_scan_store(db: AsyncSession = Depends(get_db)) -> ScanStore:
    return ScanStore(db)


async def get_token_subject(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Optional[str]:
    """
    Subject of the bearer token, or None when no token was sent.

    Verification needs SUPABASE_JWT_SECRET; without it (local dev) tokens are
    not inspected at all.
    """
    if not credentials:
        return None
    secret = os.getenv("SUPABASE_JWT_SECRET")
    if not secret:
        return None
    try:
        payload = jwt.decode(
            credentials.credentials,
            secret,
            algorithms=[ALGORITHM],
            audience=JWT_AUDIENCE,
        )
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return subject


def assert_user_matches(token_subject: Optional[str], user_id: str) -> None:
    if token_subject is not None and token_subject != user_id:
        logger.warning(f"Token subject {token_subject} does not match user_id {user_id}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="user_id does not match token")
