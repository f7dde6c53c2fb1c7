from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Process settings, overridable through ``RBAC_*`` environment variables.

    Policy (role names, default grants, limits) lives in the YAML file named by
    ``policy_config_path``; identity token settings are read by
    ``IdentityConfig.from_environ``.
    """

    model_config = SettingsConfigDict(env_prefix="RBAC_", extra="ignore")

    db_url: str | None = None
    policy_config_path: str | None = None
    log_level: str = "INFO"

    store_timeout_ms: int = 300
    store_workers: int = 8

    audit_sink_url: str | None = None
    audit_batch_size: int = 50
    audit_flush_interval_seconds: float = 1.0
    audit_max_retries: int = 3

    # Tenant bindings unused for this long are dropped.
    session_idle_seconds: int = 3600

    def resolved_db_url(self) -> str:
        if self.db_url:
            return self.db_url

        repo_root = Path(__file__).resolve().parents[1]
        db_path = repo_root / "tenant_rbac.db"
        return f"sqlite:///{db_path}"

    def resolved_policy_config_path(self) -> Path:
        if self.policy_config_path:
            return Path(self.policy_config_path)

        repo_root = Path(__file__).resolve().parents[1]
        return repo_root / "config" / "policy.yaml"

    @property
    def store_timeout_seconds(self) -> float:
        return self.store_timeout_ms / 1000.0


@lru_cache
def get_settings() -> Settings:
    return Settings()
