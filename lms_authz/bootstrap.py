from __future__ import annotations

import logging

from fastapi import FastAPI

from lms_authz.engine.tokens import SessionTokenCodec
from lms_authz.logging_config import configure_app_logging
from lms_authz.security.dependencies import install_access_control
from lms_authz.service import AccessControlService
from lms_authz.settings import Settings, get_settings

logger = logging.getLogger(__name__)


def build_access_service(settings: Settings | None = None) -> AccessControlService:
    """
    Startup wiring for a host application:
    configure logging, ensure tables + seed, then load the engine from the database.
    """

    # db.session builds its engine at import time.
    from lms_authz.db.init_db import init_db
    from lms_authz.db.session import SessionLocal
    from lms_authz.db.store import SqlAccessStore

    settings = settings or get_settings()
    configure_app_logging(settings.log_level)
    logger.info("Access control startup beginning")

    init_db(settings.resolved_seed_config_path())
    logger.info("Database initialized (tables ensured + seed if needed)")

    return AccessControlService(SqlAccessStore(SessionLocal), settings)


def attach_to_app(app: FastAPI, settings: Settings | None = None) -> AccessControlService:
    """Build the service and install it, with a token codec, on a FastAPI app."""

    settings = settings or get_settings()
    service = build_access_service(settings)
    codec = SessionTokenCodec(settings.token_secret, settings.token_algorithm)
    install_access_control(app, service, codec)
    return service
