from __future__ import annotations

import logging
from typing import Callable

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

from lms_authz.engine.tokens import SessionTokenCodec
from lms_authz.errors import AccessControlError
from lms_authz.security.auth import authenticate
from lms_authz.security.context import AuthzContext
from lms_authz.service import AccessControlService

logger = logging.getLogger(__name__)

DEPARTMENT_HEADER = "X-Department-Id"


def get_access_service(request: Request) -> AccessControlService:
    service = getattr(request.app.state, "access_service", None)
    if service is None:
        raise RuntimeError("Access control service not loaded. Did app startup run?")
    return service


def get_token_codec(request: Request) -> SessionTokenCodec:
    codec = getattr(request.app.state, "token_codec", None)
    if codec is None:
        raise RuntimeError("Session token codec not loaded. Did app startup run?")
    return codec


def get_authz(request: Request) -> AuthzContext:
    authz = getattr(request.state, "authz", None)
    if authz is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return authz


def require_rights(*rights: str, require_all: bool = False) -> Callable[[Request], AuthzContext]:
    """
    Dependency factory guarding a route with access rights.

        @router.get("/courses", dependencies=[Depends(require_rights("content:courses:read"))])

    OR semantics by default; pass require_all=True for AND. The check is
    narrowed to the department named by the X-Department-Id header, or else
    to the session's active department (see switch_department).
    """

    if not rights:
        raise ValueError("require_rights needs at least one access right")
    required = tuple(rights)

    def dependency(request: Request) -> AuthzContext:
        session = authenticate(request, get_token_codec(request))
        department_id = request.headers.get(DEPARTMENT_HEADER) or session.active_department_id

        result = get_access_service(request).evaluate(
            session.user_id,
            required,
            require_all=require_all,
            department_id=department_id,
            session=session,
        )
        if not result.granted:
            logger.info(
                "Access denied user=%s path=%s method=%s denied=%s",
                session.user_id,
                request.url.path,
                request.method,
                list(result.denied_rights),
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"message": "Insufficient access rights", "denied_rights": list(result.denied_rights)},
            )

        authz = AuthzContext.from_evaluation(session, result, department_id)
        request.state.authz = authz
        return authz

    return dependency


def install_access_control(app: FastAPI, service: AccessControlService, codec: SessionTokenCodec) -> None:
    app.state.access_service = service
    app.state.token_codec = codec
    register_error_handlers(app)


def register_error_handlers(app: FastAPI) -> None:
    """Map AccessControlError subclasses onto their HTTP status codes."""

    @app.exception_handler(AccessControlError)
    async def _access_control_error(request: Request, exc: AccessControlError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s path=%s method=%s", exc.code, request.url.path, request.method)
        else:
            logger.info("%s path=%s method=%s", exc.code, request.url.path, request.method)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
