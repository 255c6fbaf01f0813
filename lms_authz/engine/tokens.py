"""
Signed session tokens.

The state machine only decides which transitions are legal; expiry is enforced
here. Escalated sessions carry their shorter ttl into ``exp``, so an admin token
dies before the normal session it was raised from.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any

import jwt

from lms_authz.errors import SessionTokenError

from .types import Session, SessionMode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    mode: SessionMode
    escalated_roles: tuple[str, ...]
    active_department_id: str | None
    expires_at: datetime


class SessionTokenCodec:
    def __init__(self, secret: str, algorithm: str = "HS256", leeway_seconds: int = 0) -> None:
        if not secret:
            raise ValueError("session token secret must be set")
        self._secret = secret
        self._algorithm = algorithm
        self._leeway = leeway_seconds

    def encode(self, session: Session) -> str:
        issued = session.issued_at
        payload: dict[str, Any] = {
            "sub": session.user_id,
            "mode": session.mode.value,
            "roles": sorted(session.escalated_roles),
            "dept": session.active_department_id,
            "iat": int(issued.timestamp()),
            "exp": int((issued + session.ttl).timestamp()),
            "type": "admin" if session.is_escalated else "access",
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def decode(self, token: str) -> SessionClaims:
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                leeway=self._leeway,
                options={"require": ["sub", "exp", "iat"]},
            )
        except jwt.ExpiredSignatureError as exc:
            logger.info("Session token expired")
            raise SessionTokenError("session token has expired") from exc
        except jwt.InvalidTokenError as exc:
            logger.warning("Session token rejected: %s", type(exc).__name__)
            raise SessionTokenError("invalid session token") from exc

        try:
            mode = SessionMode(payload.get("mode", SessionMode.NORMAL.value))
        except ValueError as exc:
            raise SessionTokenError("invalid session mode in token") from exc

        return SessionClaims(
            user_id=str(payload["sub"]),
            mode=mode,
            escalated_roles=tuple(payload.get("roles") or ()),
            active_department_id=payload.get("dept"),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )
