"""Application settings, read from the environment."""

import logging
import os
from typing import Optional

import structlog
from dotenv import load_dotenv
from pydantic import BaseModel

from .services.llm import OPENROUTER_URL

logger = structlog.get_logger()


class Settings(BaseModel):
    """Runtime configuration for the client."""

    supabase_url: str = ""
    supabase_anon_key: str = ""
    # Fallback inference key when the user has not supplied one
    openrouter_api_key: Optional[str] = None
    inference_url: str = OPENROUTER_URL
    billing_api_url: str = "http://localhost:3000/api"
    app_origin: str = "http://localhost:8000"
    app_title: str = "aiWeb"
    state_path: Optional[str] = "~/.webai/state.json"
    session_init_timeout: float = 15.0
    profile_poll_interval: float = 60.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the environment, loading `.env` first."""
        load_dotenv()
        settings = cls(
            supabase_url=os.getenv("SUPABASE_URL", ""),
            supabase_anon_key=os.getenv("SUPABASE_ANON_KEY", ""),
            openrouter_api_key=os.getenv("OPENROUTER_API_KEY") or None,
            inference_url=os.getenv("OPENROUTER_URL", OPENROUTER_URL),
            billing_api_url=os.getenv("BILLING_API_URL", "http://localhost:3000/api"),
            app_origin=os.getenv("APP_ORIGIN", "http://localhost:8000"),
            app_title=os.getenv("APP_TITLE", "aiWeb"),
            state_path=os.getenv("WEBAI_STATE_PATH", "~/.webai/state.json") or None,
            session_init_timeout=float(os.getenv("SESSION_INIT_TIMEOUT", "15")),
            profile_poll_interval=float(os.getenv("PROFILE_POLL_INTERVAL", "60")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
        if not settings.supabase_url or not settings.supabase_anon_key:
            logger.warning(
                "supabase_credentials_missing",
                hint="set SUPABASE_URL and SUPABASE_ANON_KEY in your .env file",
            )
        return settings


def configure_logging(level: str = "INFO") -> None:
    """Drop structlog events below ``level``."""
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(numeric))
