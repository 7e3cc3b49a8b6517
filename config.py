import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        throttle_limit: int,
        throttle_window_secs: float,
        dispatch_workers: int,
        unit_timeout_secs: float,
        store_timeout_secs: float,
        http_timeout_secs: float,
        alert_threshold_pct: int,
        max_catch_up_occurrences: int,
        resend_api_key: Optional[str],
        email_from: str,
        gemini_api_key: Optional[str],
        gemini_model: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.throttle_limit = throttle_limit
        self.throttle_window_secs = throttle_window_secs
        self.dispatch_workers = dispatch_workers
        self.unit_timeout_secs = unit_timeout_secs
        self.store_timeout_secs = store_timeout_secs
        self.http_timeout_secs = http_timeout_secs
        self.alert_threshold_pct = alert_threshold_pct
        self.max_catch_up_occurrences = max_catch_up_occurrences
        self.resend_api_key = resend_api_key
        self.email_from = email_from
        self.gemini_api_key = gemini_api_key
        self.gemini_model = gemini_model


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINTRACK_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "fintrack.db"
    return Settings(
        database_url=os.getenv("FINTRACK_DATABASE_URL", f"sqlite:///{default_db}"),
        # Occurrence dates are computed in this single calendar.
        timezone=os.getenv("FINTRACK_TIMEZONE", "UTC"),
        throttle_limit=int(os.getenv("FINTRACK_THROTTLE_LIMIT", "10")),
        throttle_window_secs=float(os.getenv("FINTRACK_THROTTLE_WINDOW_SECS", "60")),
        dispatch_workers=int(os.getenv("FINTRACK_DISPATCH_WORKERS", "4")),
        unit_timeout_secs=float(os.getenv("FINTRACK_UNIT_TIMEOUT_SECS", "120")),
        store_timeout_secs=float(os.getenv("FINTRACK_STORE_TIMEOUT_SECS", "15")),
        http_timeout_secs=float(os.getenv("FINTRACK_HTTP_TIMEOUT_SECS", "10")),
        alert_threshold_pct=int(os.getenv("FINTRACK_ALERT_THRESHOLD_PCT", "80")),
        max_catch_up_occurrences=int(
            os.getenv("FINTRACK_MAX_CATCH_UP_OCCURRENCES", "366")
        ),
        resend_api_key=os.getenv("FINTRACK_RESEND_API_KEY") or None,
        email_from=os.getenv(
            "FINTRACK_EMAIL_FROM", "FinTrack App <onboarding@resend.dev>"
        ),
        gemini_api_key=os.getenv("FINTRACK_GEMINI_API_KEY") or None,
        gemini_model=os.getenv("FINTRACK_GEMINI_MODEL", "gemini-1.5-flash"),
    )
