import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        storage_backend: str,
        timezone: str,
        secret_key: str,
        token_max_age_hours: int,
        openai_api_key: str,
        openai_model: str,
        ai_timeout_secs: float,
        log_level: str,
        cors_origins: list[str],
    ) -> None:
        self.database_url = database_url
        self.storage_backend = storage_backend
        self.timezone = timezone
        self.secret_key = secret_key
        self.token_max_age_hours = token_max_age_hours
        self.openai_api_key = openai_api_key
        self.openai_model = openai_model
        self.ai_timeout_secs = ai_timeout_secs
        self.log_level = log_level
        self.cors_origins = cors_origins


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    storage_backend = os.getenv("FINANCE_STORAGE", "sql").lower()
    if storage_backend not in {"sql", "memory"}:
        raise ValueError(f"Unsupported storage backend: {storage_backend}")
    timezone = os.getenv("FINANCE_TIMEZONE", "UTC")
    secret_key = os.getenv(
        "FINANCE_SECRET_KEY",
        "3f9c2d7a61b84e0f95c1a8d2e7b4c6f01d9e8a7b6c5d4e3f2a1b0c9d8e7f6a5b",
    )
    token_max_age_hours = int(os.getenv("FINANCE_TOKEN_MAX_AGE_HOURS", "168"))
    openai_api_key = os.getenv("FINANCE_OPENAI_API_KEY") or os.getenv(
        "OPENAI_API_KEY", ""
    )
    openai_model = os.getenv("FINANCE_OPENAI_MODEL", "gpt-4o-mini")
    ai_timeout_secs = float(os.getenv("FINANCE_AI_TIMEOUT_SECS", "15"))
    log_level = os.getenv("FINANCE_LOG_LEVEL", "INFO").upper()
    cors_origins = [
        origin.strip()
        for origin in os.getenv("FINANCE_CORS_ORIGINS", "*").split(",")
        if origin.strip()
    ]
    return Settings(
        database_url=database_url,
        storage_backend=storage_backend,
        timezone=timezone,
        secret_key=secret_key,
        token_max_age_hours=token_max_age_hours,
        openai_api_key=openai_api_key,
        openai_model=openai_model,
        ai_timeout_secs=ai_timeout_secs,
        log_level=log_level,
        cors_origins=cors_origins,
    )
