import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        jwt_secret: str,
        jwt_algorithm: str,
        token_ttl_days: int,
        default_currency: str,
        cors_origins: list[str],
        auto_create_schema: bool,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.jwt_secret = jwt_secret
        self.jwt_algorithm = jwt_algorithm
        self.token_ttl_days = token_ttl_days
        self.default_currency = default_currency
        self.cors_origins = cors_origins
        self.auto_create_schema = auto_create_schema
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("POCKETLEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("POCKETLEDGER_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "pocketledger.db"
        database_url = f"sqlite:///{default_db}"
    timezone = os.getenv("POCKETLEDGER_TIMEZONE", "UTC")
    jwt_secret = os.getenv(
        "POCKETLEDGER_JWT_SECRET",
        "5c2f0d8e7a9b41e3b6a1f4d2c8e07b93a6d5f1c2e4b8a0d9f3c7e1b5a2d6f840",
    )
    jwt_algorithm = os.getenv("POCKETLEDGER_JWT_ALGORITHM", "HS256")
    token_ttl_days = int(os.getenv("POCKETLEDGER_TOKEN_TTL_DAYS", "7"))
    default_currency = os.getenv("POCKETLEDGER_DEFAULT_CURRENCY", "USD").upper()
    cors_origins = [
        origin.strip()
        for origin in os.getenv("POCKETLEDGER_CORS_ORIGINS", "*").split(",")
        if origin.strip()
    ]
    auto_create_schema = _env_flag("POCKETLEDGER_AUTO_CREATE_SCHEMA", "true")
    log_level = os.getenv("POCKETLEDGER_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        jwt_secret=jwt_secret,
        jwt_algorithm=jwt_algorithm,
        token_ttl_days=token_ttl_days,
        default_currency=default_currency,
        cors_origins=cors_origins,
        auto_create_schema=auto_create_schema,
        log_level=log_level,
    )
