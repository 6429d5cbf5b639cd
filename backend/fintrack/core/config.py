import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    service_name: str
    database_url: str
    redis_url: str | None
    redis_prefix: str
    db_pool_min: int
    db_pool_max: int
    db_pool_timeout: float
    db_pool_max_waiting: int
    stats_cache_ttl: int
    audit_queue_size: int
    audit_drain_timeout: float
    request_timeout_ms: int
    default_page_limit: int
    max_page_limit: int
    internal_token: str
    auto_migrate: bool
    default_account_name: str
    log_level: str
    log_json: bool


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    database_url = os.getenv("DATABASE_URL", "")
    if not database_url:
        raise RuntimeError("DATABASE_URL is required")

    db_pool_min = max(1, int(os.getenv("DB_POOL_MIN", "1")))
    db_pool_max = max(db_pool_min, int(os.getenv("DB_POOL_MAX", "10")))
    max_page_limit = max(1, int(os.getenv("MAX_PAGE_LIMIT", "500")))

    return Settings(
        service_name=(os.getenv("SERVICE_NAME") or "api-service").strip() or "api-service",
        database_url=database_url,
        redis_url=(os.getenv("REDIS_URL") or "").strip() or None,
        redis_prefix=(os.getenv("REDIS_PREFIX") or "fintrack").strip() or "fintrack",
        db_pool_min=db_pool_min,
        db_pool_max=db_pool_max,
        db_pool_timeout=float(os.getenv("DB_POOL_TIMEOUT", "30")),
        db_pool_max_waiting=int(os.getenv("DB_POOL_MAX_WAITING", "100")),
        stats_cache_ttl=max(1, int(os.getenv("STATS_CACHE_TTL", "30"))),
        audit_queue_size=max(1, int(os.getenv("AUDIT_QUEUE_SIZE", "1000"))),
        audit_drain_timeout=float(os.getenv("AUDIT_DRAIN_TIMEOUT", "5")),
        request_timeout_ms=max(0, int(os.getenv("REQUEST_TIMEOUT_MS", "10000"))),
        default_page_limit=max(1, min(int(os.getenv("DEFAULT_PAGE_LIMIT", "100")), max_page_limit)),
        max_page_limit=max_page_limit,
        internal_token=(os.getenv("INTERNAL_TOKEN") or "").strip(),
        auto_migrate=_env_bool("AUTO_MIGRATE", "true"),
        default_account_name=(os.getenv("DEFAULT_ACCOUNT_NAME") or "Main account").strip() or "Main account",
        log_level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper(),
        log_json=_env_bool("LOG_JSON", "true"),
    )


settings = load_settings()
