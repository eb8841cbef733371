"""JWT bearer-token verification.

Tokens are issued by the account service; the relay only verifies them.
A valid token is an HS256 JWT whose ``sub`` claim is the subject id and
which carries an ``exp`` claim. An optional ``username`` claim is used as
the display name when the subject store has no record.

``issue`` exists for tests and local development.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from relay.chat.errors import AuthenticationFailed
from relay.store.schemas import Subject

logger = logging.getLogger(__name__)


class TokenVerifier:
    """Resolves bearer credentials to a ``Subject``."""

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        issuer: Optional[str] = None,
    ) -> None:
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.issuer = issuer

    def verify(self, token: Optional[str]) -> Subject:
        """Verify *token* and return its subject.

        Raises:
            AuthenticationFailed: if the token is missing, malformed,
                badly signed, expired or lacks a subject.
        """
        if not token:
            raise AuthenticationFailed("Missing credential")
        try:
            claims = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                options={"require": ["sub", "exp"]},
            )
        except jwt.ExpiredSignatureError:
            raise AuthenticationFailed("Token has expired")
        except jwt.InvalidTokenError as e:
            logger.info(f"[Auth] Rejected token: {e}")
            raise AuthenticationFailed("Invalid token")

        subject_id = str(claims["sub"]).strip()
        if not subject_id:
            raise AuthenticationFailed("Invalid token")
        return Subject(id=subject_id, displayName=claims.get("username") or subject_id)

    def issue(
        self,
        subject_id: str,
        username: Optional[str] = None,
        expires_in: timedelta = timedelta(days=30),
    ) -> str:
        """Mint a token for *subject_id* (tests and local development)."""
        now = datetime.now(timezone.utc)
        payload = {"sub": subject_id, "iat": now, "exp": now + expires_in}
        if username:
            payload["username"] = username
        if self.issuer:
            payload["iss"] = self.issuer
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)
