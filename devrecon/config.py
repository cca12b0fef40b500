"""Runtime configuration loaded from the environment (and an optional .env file)."""
from __future__ import annotations

import os
from dataclasses import dataclass, replace

from dotenv import load_dotenv

from .errors import ConfigurationError

ENV_PREFIX = "DEVRECON_"


def _env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(ENV_PREFIX + name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = _env(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be >= {minimum}, got {value}")
    return value


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    """Everything the engine, its sources and its store need to run."""

    batch_size: int = 100
    max_retry_attempts: int = 3
    retry_base_delay_ms: float = 1000.0
    max_retry_workers: int = 4
    store_url: str = "sqlite:///devrecon.db"
    sync_container: str = "devices_all"
    metadata_container: str = "sync_metadata"
    source_mode: str = "api"
    protection_container: str = "devices_protection"
    mdm_container: str = "devices_mdm"
    tenant_id: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    token_url: str | None = None
    protection_api_url: str = "https://api.securitycenter.microsoft.com/api/machines"
    protection_scope: str = "https://api.securitycenter.microsoft.com/.default"
    mdm_api_url: str = "https://graph.microsoft.com/v1.0/deviceManagement/managedDevices"
    mdm_scope: str = "https://graph.microsoft.com/.default"
    page_size: int = 100
    request_timeout: float = 60.0
    source_restart_attempts: int = 0
    schedule_interval_hours: float = 6.0
    lease_seconds: int = 3600
    error_history_limit: int = 100

    @classmethod
    def from_env(cls, *, dotenv: bool = True) -> "Settings":
        if dotenv:
            load_dotenv()
        source_mode = (_env("SOURCE_MODE", "api") or "api").lower()
        if source_mode not in {"api", "store"}:
            raise ConfigurationError(f"{ENV_PREFIX}SOURCE_MODE must be 'api' or 'store', got {source_mode!r}")
        tenant_id = _env("TENANT_ID")
        token_url = _env("TOKEN_URL")
        if token_url is None and tenant_id:
            token_url = f"https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"
        defaults = cls()
        return cls(
            batch_size=_env_int("BATCH_SIZE", defaults.batch_size, minimum=1),
            max_retry_attempts=_env_int("MAX_RETRY_ATTEMPTS", defaults.max_retry_attempts),
            retry_base_delay_ms=_env_float("RETRY_BASE_DELAY_MS", defaults.retry_base_delay_ms),
            max_retry_workers=_env_int("MAX_RETRY_WORKERS", defaults.max_retry_workers, minimum=1),
            store_url=_env("STORE_URL", defaults.store_url),
            sync_container=_env("SYNC_CONTAINER", defaults.sync_container),
            metadata_container=_env("METADATA_CONTAINER", defaults.metadata_container),
            source_mode=source_mode,
            protection_container=_env("PROTECTION_CONTAINER", defaults.protection_container),
            mdm_container=_env("MDM_CONTAINER", defaults.mdm_container),
            tenant_id=tenant_id,
            client_id=_env("CLIENT_ID"),
            client_secret=_env("CLIENT_SECRET"),
            token_url=token_url,
            protection_api_url=_env("PROTECTION_API_URL", defaults.protection_api_url),
            protection_scope=_env("PROTECTION_SCOPE", defaults.protection_scope),
            mdm_api_url=_env("MDM_API_URL", defaults.mdm_api_url),
            mdm_scope=_env("MDM_SCOPE", defaults.mdm_scope),
            page_size=_env_int("PAGE_SIZE", defaults.page_size, minimum=1),
            request_timeout=_env_float("REQUEST_TIMEOUT", defaults.request_timeout),
            source_restart_attempts=_env_int("SOURCE_RESTART_ATTEMPTS", defaults.source_restart_attempts),
            schedule_interval_hours=_env_float("SCHEDULE_INTERVAL_HOURS", defaults.schedule_interval_hours),
            lease_seconds=_env_int("LEASE_SECONDS", defaults.lease_seconds, minimum=1),
            error_history_limit=_env_int("ERROR_HISTORY_LIMIT", defaults.error_history_limit, minimum=1),
        )

    def with_overrides(self, **changes: object) -> "Settings":
        return replace(self, **changes)
