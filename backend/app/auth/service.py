"""JWT token service.

Tokens carry the user identity in the ``sub`` claim and must include
``exp`` and ``iat``. Issuer and audience are checked only when configured.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from app.chat.errors import Unauthorized
from app.config import AppConfig

logger = logging.getLogger(__name__)


class TokenService:
    """Issues and verifies access tokens."""

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        expire_minutes: int = 60,
    ):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.issuer = issuer
        self.audience = audience
        self.expire_minutes = expire_minutes

    @classmethod
    def from_config(cls, config: AppConfig) -> "TokenService":
        return cls(
            secret_key=config.secrets.jwt.secret_key,
            algorithm=config.auth.algorithm,
            issuer=config.auth.issuer,
            audience=config.auth.audience,
            expire_minutes=config.auth.token_expire_minutes,
        )

    def issue(self, user_id: str, expires_in: Optional[timedelta] = None) -> str:
        """Mint a token for ``user_id``."""
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user_id,
            "iat": now,
            "exp": now + (expires_in or timedelta(minutes=self.expire_minutes)),
        }
        if self.issuer:
            payload["iss"] = self.issuer
        if self.audience:
            payload["aud"] = self.audience
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def verify(self, token: Optional[str]) -> str:
        """Validate a token and return the user identity.

        Raises:
            Unauthorized: If the token is missing, malformed, expired, or
                lacks a subject.
        """
        if not token:
            raise Unauthorized("Missing token")

        required = ["sub", "exp", "iat"]
        if self.issuer:
            required.append("iss")
        if self.audience:
            required.append("aud")

        try:
            claims = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                audience=self.audience,
                options={"require": required},
            )
        except jwt.ExpiredSignatureError:
            raise Unauthorized("Token has expired")
        except jwt.InvalidTokenError as e:
            logger.debug(f"Token rejected: {e}")
            raise Unauthorized(f"Invalid token: {e}")

        user_id = claims.get("sub")
        if not user_id or not isinstance(user_id, str):
            raise Unauthorized("Token has no subject")
        return user_id
