"""FastAPI dependency resolving the caller of an HTTP route."""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from relay.chat.engine import SessionEngine, get_engine
from relay.chat.errors import AuthenticationFailed
from relay.store.schemas import Subject

security = HTTPBearer(auto_error=False)


async def get_current_subject(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    engine: SessionEngine = Depends(get_engine),
) -> Subject:
    """Extract and verify the bearer token.

    Raises:
        HTTPException 401 if the token is missing, invalid or expired.
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No token, authorization denied",
        )
    try:
        return engine.resolve_subject(credentials.credentials)
    except AuthenticationFailed as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
        )
