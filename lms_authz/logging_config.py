from __future__ import annotations

import logging


def configure_app_logging(level: str = "INFO") -> None:
    """
    Minimal logging configuration for this package.

    Notes:
    - Stdlib logging only; the host application owns handlers and formatting.
    - Set `LMS_AUTHZ_LOG_LEVEL=DEBUG` to see every evaluation decision.
    """

    normalized = level.upper()
    logging.getLogger("lms_authz").setLevel(normalized)
    # Ensure child loggers under lms_authz.* inherit this level.
    logging.getLogger("lms_authz").propagate = True
