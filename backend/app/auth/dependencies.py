"""FastAPI dependencies for bearer-token authentication."""
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.requests import HTTPConnection

from app.chat.errors import Unauthorized

from .service import TokenService

security = HTTPBearer(auto_error=False)


def get_token_service(conn: HTTPConnection) -> TokenService:
    return conn.app.state.tokens


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    tokens: TokenService = Depends(get_token_service),
) -> str:
    """Return the verified user id for the request.

    Raises:
        HTTPException 401 if the token is missing, invalid or expired.
    """
    try:
        return tokens.verify(credentials.credentials if credentials else None)
    except Unauthorized as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        )
