from __future__ import annotations

import os
from dataclasses import dataclass

from .exceptions import ConfigError

PAGING_MODES = ("offset", "cursor")


def env(name: str, default: str | None = None) -> str | None:
    v = os.getenv(name)
    return v if v is not None else default


def env_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None or not v.strip():
        return default
    return v.strip().lower() in ("true", "1", "yes")


def env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or not v.strip():
        return default
    try:
        return int(v)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {v!r}") from e


def env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or not v.strip():
        return default
    try:
        return float(v)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {v!r}") from e


def must_get(name: str) -> str:
    v = os.getenv(name)
    if not v:
        raise ConfigError(f"Missing required environment variable: {name}")
    return v


@dataclass(frozen=True)
class Settings:
    instance_url: str
    dataspace: str
    sql_query: str
    api_version: str = "v64.0"

    # Credentials: OAuth client credentials take precedence over a static token.
    access_token: str | None = None
    use_oauth: bool = False
    client_id: str | None = None
    client_secret: str | None = None
    grant_type: str = "client_credentials"
    token_lifetime_sec: int = 2 * 60 * 60
    token_validation_ttl_sec: int = 5 * 60

    # Output
    output_dir: str = "./exports"
    output_prefix: str = "baseevent"
    output_csv: str | None = None

    # Paging
    paging_mode: str = "offset"
    max_batch_size: int = 25000
    probe_row_limit: int = 1
    pause_every: int = 10
    pause_seconds: float = 0.1

    # HTTP
    connect_timeout: float = 10.0
    read_timeout: float = 120.0

    # Object storage
    upload_enabled: bool = False
    s3_bucket: str | None = None
    s3_region: str | None = None
    s3_make_public: bool = False
    s3_prefix: str = "query-exports"

    log_level: str = "INFO"

    # Scheduler cadence; cron wins when set
    schedule_cron: str | None = None
    schedule_minutes: int = 60

    def __post_init__(self) -> None:
        if self.paging_mode not in PAGING_MODES:
            raise ConfigError(f"PAGING_MODE must be one of {', '.join(PAGING_MODES)}, got {self.paging_mode!r}")
        if self.max_batch_size < 1:
            raise ConfigError("MAX_BATCH_SIZE must be >= 1")
        if self.upload_enabled and not self.s3_bucket:
            raise ConfigError("UPLOAD_ENABLED requires S3_BUCKET")

    @property
    def api_base_url(self) -> str:
        return f"{self.instance_url.rstrip('/')}/services/data/{self.api_version}"


def load_settings() -> Settings:
    return Settings(
        instance_url=must_get("SF_INSTANCE_URL"),
        dataspace=must_get("SF_DATASPACE"),
        sql_query=must_get("QUERY_SQL"),
        api_version=env("SF_API_VERSION", "v64.0") or "v64.0",
        access_token=env("SF_ACCESS_TOKEN") or None,
        use_oauth=env_bool("USE_OAUTH"),
        client_id=env("SF_CLIENT_ID") or None,
        client_secret=env("SF_CLIENT_SECRET") or None,
        grant_type=env("SF_GRANT_TYPE", "client_credentials") or "client_credentials",
        token_lifetime_sec=env_int("TOKEN_LIFETIME_SEC", 2 * 60 * 60),
        token_validation_ttl_sec=env_int("TOKEN_VALIDATION_TTL_SEC", 5 * 60),
        output_dir=env("OUTPUT_DIR", "./exports") or "./exports",
        output_prefix=env("OUTPUT_PREFIX", "baseevent") or "baseevent",
        output_csv=env("OUTPUT_CSV") or None,
        paging_mode=(env("PAGING_MODE", "offset") or "offset").strip().lower(),
        max_batch_size=env_int("MAX_BATCH_SIZE", 25000),
        pause_every=env_int("PAUSE_EVERY", 10),
        pause_seconds=env_float("PAUSE_SECONDS", 0.1),
        connect_timeout=env_float("HTTP_CONNECT_TIMEOUT", 10.0),
        read_timeout=env_float("HTTP_READ_TIMEOUT", 120.0),
        upload_enabled=env_bool("UPLOAD_ENABLED"),
        s3_bucket=env("S3_BUCKET") or None,
        s3_region=env("S3_REGION") or None,
        s3_make_public=env_bool("S3_MAKE_PUBLIC"),
        s3_prefix=env("S3_PREFIX", "query-exports") or "query-exports",
        log_level=(env("LOG_LEVEL", "INFO") or "INFO").upper(),
        schedule_cron=env("SCHEDULE_CRON") or None,
        schedule_minutes=env_int("SCHEDULE_MINUTES", 60),
    )
