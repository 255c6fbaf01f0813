from __future__ import annotations

import logging

from fastapi import HTTPException, Request, status

from lms_authz.engine.tokens import SessionClaims, SessionTokenCodec
from lms_authz.engine.types import Session, parse_role_names

logger = logging.getLogger(__name__)

AUTHORIZATION_HEADER = "Authorization"
BEARER_PREFIX = "Bearer"


def extract_bearer_token(request: Request) -> str | None:
    """
    Extract the bearer token from the request.

    - Input: `Authorization: Bearer <token>`
    - Returns None when the header is absent; malformed headers are a 400.
    """

    raw = request.headers.get(AUTHORIZATION_HEADER)
    if not raw:
        logger.info("Missing Authorization header (auth required) path=%s method=%s", request.url.path, request.method)
        return None

    prefix = f"{BEARER_PREFIX} "
    if not raw.startswith(prefix):
        logger.warning("Invalid Authorization header format path=%s method=%s", request.url.path, request.method)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {AUTHORIZATION_HEADER}. Expected '{BEARER_PREFIX} <token>'.",
        )

    token = raw[len(prefix) :].strip()
    if not token:
        logger.warning("Empty bearer token path=%s method=%s", request.url.path, request.method)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {AUTHORIZATION_HEADER}. Missing token after '{BEARER_PREFIX}'.",
        )
    return token


def session_from_claims(claims: SessionClaims) -> Session:
    """
    Rebuild the caller's Session from verified token claims.

    available_rights is left empty: the evaluator recomputes rights on every
    request from current memberships.
    """

    return Session(
        user_id=claims.user_id,
        mode=claims.mode,
        escalated_roles=parse_role_names(claims.escalated_roles),
        active_department_id=claims.active_department_id,
    )


def authenticate(request: Request, codec: SessionTokenCodec) -> Session:
    token = extract_bearer_token(request)
    if token is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    # SessionTokenError propagates to the registered error handler (401).
    return session_from_claims(codec.decode(token))
