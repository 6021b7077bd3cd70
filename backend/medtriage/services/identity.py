from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import ExpiredSignatureError, JWTError, jwt

from medtriage.core.errors import Unauthenticated

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: Optional[str] = None


class JwtIdentityProvider:
    """Verifies bearer tokens issued by the identity provider (HS256 shared secret)."""

    def __init__(self, secret_key: str, algorithm: str = "HS256") -> None:
        self._secret_key = secret_key
        self._algorithm = algorithm

    def verify(self, token: Optional[str]) -> Identity:
        if not token:
            raise Unauthenticated("No token provided")
        try:
            claims = jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
        except ExpiredSignatureError as exc:
            raise Unauthenticated("Token expired, please login again") from exc
        except JWTError as exc:
            logger.info("Rejected bearer token: %s", exc)
            raise Unauthenticated("Invalid token") from exc

        user_id = claims.get("sub")
        if not user_id:
            raise Unauthenticated("Token has no subject")
        return Identity(user_id=str(user_id), email=claims.get("email"))

    def issue(self, user_id: str, email: Optional[str] = None, expires_in: timedelta = timedelta(hours=1)) -> str:
        """Mint a token; used by local tooling and tests in place of the external issuer."""
        claims = {"sub": user_id, "exp": datetime.now(timezone.utc) + expires_in}
        if email:
            claims["email"] = email
        return jwt.encode(claims, self._secret_key, algorithm=self._algorithm)
