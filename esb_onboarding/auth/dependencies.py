from fastapi import Cookie, Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional

security = HTTPBearer(auto_error=False)


async def get_bearer_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    token: Optional[str] = Cookie(default=None),
) -> str:
    """
    Dependency returning the caller's platform token.

    The token is forwarded as-is to the backend, which validates it. Meta's
    redirect back to /esb/callback carries no Authorization header, so the
    `token` cookie is accepted as well.
    """
    if credentials is not None and credentials.credentials:
        return credentials.credentials
    if token:
        return token
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )
