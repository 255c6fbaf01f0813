from __future__ import annotations

from datetime import timedelta
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Engine settings.

    Notes:
    - Defaults are local and deterministic; override via LMS_AUTHZ_* env vars.
    - Levels follow the seeded built-in roles: admin roles sit at 90 and above,
      custom roles are confined below that.
    """

    model_config = SettingsConfigDict(env_prefix="LMS_AUTHZ_", extra="ignore")

    db_url: str | None = None
    seed_config_path: str | None = None
    log_level: str = "INFO"

    admin_level_threshold: int = 90
    custom_role_min_level: int = 10
    custom_role_max_level: int = 89
    max_hierarchy_depth: int = 64
    max_role_depth: int = 32
    master_department_id: str | None = "master"

    session_ttl_minutes: int = 60
    escalated_session_ttl_minutes: int = 15
    token_secret: str = "change-me-in-production"
    token_algorithm: str = "HS256"

    @property
    def custom_level_range(self) -> tuple[int, int]:
        return (self.custom_role_min_level, self.custom_role_max_level)

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(minutes=self.session_ttl_minutes)

    @property
    def escalated_session_ttl(self) -> timedelta:
        return timedelta(minutes=self.escalated_session_ttl_minutes)

    def resolved_db_url(self) -> str:
        if self.db_url:
            return self.db_url

        repo_root = Path(__file__).resolve().parents[1]
        db_path = repo_root / "lms_authz.db"
        return f"sqlite:///{db_path}"

    def resolved_seed_config_path(self) -> Path:
        if self.seed_config_path:
            return Path(self.seed_config_path)

        repo_root = Path(__file__).resolve().parents[1]
        return repo_root / "config" / "access_control.yaml"


@lru_cache
def get_settings() -> Settings:
    return Settings()
