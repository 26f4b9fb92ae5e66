import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        db_timeout_secs: float,
        provider_base_url: str,
        provider_client_id: str,
        provider_secret: str,
        provider_timeout_secs: float,
        sync_interval_hours: int,
        scheduler_enabled: bool,
        reconcile_lock_timeout_secs: float,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.db_timeout_secs = db_timeout_secs
        self.provider_base_url = provider_base_url
        self.provider_client_id = provider_client_id
        self.provider_secret = provider_secret
        self.provider_timeout_secs = provider_timeout_secs
        self.sync_interval_hours = sync_interval_hours
        self.scheduler_enabled = scheduler_enabled
        self.reconcile_lock_timeout_secs = reconcile_lock_timeout_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("SUBTRACK_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "subscriptions.db"
    database_url = os.getenv("SUBTRACK_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("SUBTRACK_TIMEZONE", "UTC")
    db_timeout_secs = float(os.getenv("SUBTRACK_DB_TIMEOUT_SECS", "10"))
    provider_base_url = os.getenv(
        "SUBTRACK_PROVIDER_BASE_URL", "https://sandbox.plaid.com"
    ).rstrip("/")
    provider_client_id = os.getenv("SUBTRACK_PROVIDER_CLIENT_ID", "")
    provider_secret = os.getenv("SUBTRACK_PROVIDER_SECRET", "")
    provider_timeout_secs = float(os.getenv("SUBTRACK_PROVIDER_TIMEOUT_SECS", "15"))
    sync_interval_hours = int(os.getenv("SUBTRACK_SYNC_INTERVAL_HOURS", "24"))
    scheduler_enabled = _env_flag("SUBTRACK_SCHEDULER_ENABLED", "true")
    reconcile_lock_timeout_secs = float(
        os.getenv("SUBTRACK_RECONCILE_LOCK_TIMEOUT_SECS", "30")
    )
    return Settings(
        database_url=database_url,
        timezone=timezone,
        db_timeout_secs=db_timeout_secs,
        provider_base_url=provider_base_url,
        provider_client_id=provider_client_id,
        provider_secret=provider_secret,
        provider_timeout_secs=provider_timeout_secs,
        sync_interval_hours=sync_interval_hours,
        scheduler_enabled=scheduler_enabled,
        reconcile_lock_timeout_secs=reconcile_lock_timeout_secs,
    )
