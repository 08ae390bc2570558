import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        session_secret: str,
        session_max_age_hours: int,
        gemini_api_key: Optional[str],
        gemini_model: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.session_secret = session_secret
        self.session_max_age_hours = session_max_age_hours
        self.gemini_api_key = gemini_api_key
        self.gemini_model = gemini_model


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("KAKEIBO_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "kakeibo.db"
    database_url = os.getenv("KAKEIBO_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("KAKEIBO_TIMEZONE", "Asia/Tokyo")
    session_secret = os.getenv(
        "KAKEIBO_SESSION_SECRET",
        "5f0d3c1e9a7b48e2b6c4d8f1a3e5c7b9d2f4a6c8e0b1d3f5a7c9e1b3d5f7a9c1",
    )
    session_max_age_hours = int(os.getenv("KAKEIBO_SESSION_MAX_AGE_HOURS", "168"))
    gemini_api_key = os.getenv("KAKEIBO_GEMINI_API_KEY") or None
    gemini_model = os.getenv("KAKEIBO_GEMINI_MODEL", "gemini-1.5-flash")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        session_secret=session_secret,
        session_max_age_hours=session_max_age_hours,
        gemini_api_key=gemini_api_key,
        gemini_model=gemini_model,
    )
