import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        session_secret: str,
        session_days: int,
        session_sweep_minutes: int,
        environment: str,
        create_schema: bool,
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.session_secret = session_secret
        self.session_days = session_days
        self.session_sweep_minutes = session_sweep_minutes
        self.environment = environment
        self.create_schema = create_schema
        self.scheduler_enabled = scheduler_enabled

    @property
    def secure_cookies(self) -> bool:
        return self.environment == "production"


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINANCE_TIMEZONE", "UTC")
    session_secret = os.getenv(
        "FINANCE_SESSION_SECRET",
        "3f0c7d1e9a4b52c86d0e7f1a2b3c4d5e6f708192a3b4c5d6e7f8091a2b3c4d5e",
    )
    session_days = int(os.getenv("FINANCE_SESSION_DAYS", "30"))
    session_sweep_minutes = int(os.getenv("FINANCE_SESSION_SWEEP_MINUTES", "60"))
    environment = os.getenv("FINANCE_ENVIRONMENT", "development")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        session_secret=session_secret,
        session_days=session_days,
        session_sweep_minutes=session_sweep_minutes,
        environment=environment,
        create_schema=_env_flag("FINANCE_CREATE_SCHEMA", "1"),
        scheduler_enabled=_env_flag("FINANCE_SCHEDULER_ENABLED", "1"),
    )
