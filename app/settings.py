from pydantic import BaseModel
import logging
import os


class Settings(BaseModel):
    env: str = os.getenv("ENV", "dev")

    # Storefront gateway
    api_base_url: str = os.getenv("STOREFRONT_API_BASE_URL", "http://localhost:5000/api")
    request_timeout_seconds: float = float(os.getenv("STOREFRONT_TIMEOUT_SECONDS", "20"))
    agent_identity_path: str = os.getenv("AGENT_IDENTITY_PATH", "/auth/agent/me")
    user_identity_path: str = os.getenv("USER_IDENTITY_PATH", "/auth/me")

    # Search
    poll_max_attempts: int = int(os.getenv("SEARCH_POLL_MAX_ATTEMPTS", "20"))
    poll_delay_ms: int = int(os.getenv("SEARCH_POLL_DELAY_MS", "1500"))
    search_cooldown_seconds: float = float(os.getenv("SEARCH_COOLDOWN_SECONDS", "2.0"))

    # Sessions; empty path keeps them in memory
    session_storage_path: str = os.getenv("SESSION_STORAGE_PATH", "")
    max_live_sessions: int = int(os.getenv("MAX_LIVE_SESSIONS", "1000"))

    log_level: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
