"""
Session tokens - Signed JWT cookies identifying a principal.

One token format serves all three principal kinds; the `kind` claim is the
session marker that tells users, clients and resellers apart.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import jwt
from structlog import get_logger

from license_portal.models.domain import PrincipalKind

logger = get_logger(__name__)

ALGORITHM = "HS256"


@dataclass(frozen=True)
class SessionClaims:
    """Verified contents of a session token."""

    kind: PrincipalKind
    username: str
    issued_at: datetime


class SessionTokenService:
    """Issues and verifies session tokens."""

    def __init__(self, secret: str, expire_hours: int = 24) -> None:
        self.secret = secret
        self.expire_hours = expire_hours

    def issue(self, kind: PrincipalKind, username: str) -> str:
        now = datetime.now(UTC)
        payload = {
            "sub": username,
            "kind": kind.value,
            "iat": now,
            "exp": now + timedelta(hours=self.expire_hours),
        }
        return jwt.encode(payload, self.secret, algorithm=ALGORITHM)

    def verify(self, token: str) -> SessionClaims | None:
        """Claims for a valid token, None for expired, tampered or malformed ones."""
        try:
            payload = jwt.decode(token, self.secret, algorithms=[ALGORITHM])
        except jwt.ExpiredSignatureError:
            logger.info("session_token_expired")
            return None
        except jwt.InvalidTokenError as e:
            logger.warning("session_token_invalid", error=str(e))
            return None

        try:
            return SessionClaims(
                kind=PrincipalKind(payload["kind"]),
                username=str(payload["sub"]),
                issued_at=datetime.fromtimestamp(int(payload["iat"]), UTC),
            )
        except (KeyError, ValueError, TypeError) as e:
            logger.warning("session_token_bad_claims", error=str(e))
            return None
