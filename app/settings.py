from __future__ import annotations

import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv


load_dotenv()


class Settings:
    """Relay settings loaded from environment variables (and `.env`).

    Keyword overrides win over the environment, which keeps tests from
    having to patch os.environ.
    """

    def __init__(self, **overrides) -> None:
        self.app_env: str = os.getenv("APP_ENV", "development")
        self.upstream_url: str = os.getenv(
            "RELAY_API_URL", "https://rube.app/api/mcp/execute"
        )
        self.upstream_api_key: Optional[str] = os.getenv("RELAY_API_KEY")
        self.upstream_timeout: float = float(os.getenv("UPSTREAM_TIMEOUT", "30"))
        # SQLite database stored in ./data/relay.db unless overridden
        self.database_url: str = os.getenv("DATABASE_URL", "sqlite:///./data/relay.db")
        self.default_session_id: str = os.getenv("DEFAULT_SESSION_ID", "default")
        self.history_limit: int = int(os.getenv("HISTORY_LIMIT", "50"))
        self.host: str = os.getenv("HOST", "0.0.0.0")
        self.port: int = int(os.getenv("PORT", "8000"))
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO")

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise TypeError(f"Unknown setting: {key}")
            setattr(self, key, value)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
