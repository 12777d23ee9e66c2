"""Runtime configuration read from the environment."""

import os
from typing import Mapping, Optional

from pydantic import BaseModel

DEFAULT_MODEL = "gemini-1.5-flash"

_ENV_FIELDS = {
    "GEMINI_API_KEY": "gemini_api_key",
    "GEMINI_MODEL": "gemini_model",
    "PRICE_ANALYSIS_TIMEOUT": "price_analysis_timeout",
    "MARKET_RESEARCH_TIMEOUT": "market_research_timeout",
    "CHAT_REPLY_TIMEOUT": "chat_reply_timeout",
    "OFFER_EXPIRATION_HOURS": "offer_expiration_hours",
    "OFFER_SWEEP_INTERVAL": "offer_sweep_interval",
    "LOG_LEVEL": "log_level",
    "LOG_JSON": "log_json",
}


class Settings(BaseModel):
    """Service settings. A blank API key keeps the pricing advisor in fallback mode."""

    gemini_api_key: Optional[str] = None
    gemini_model: str = DEFAULT_MODEL
    price_analysis_timeout: float = 30.0
    market_research_timeout: float = 45.0
    chat_reply_timeout: float = 20.0
    offer_expiration_hours: float = 24.0
    offer_sweep_interval: float = 60.0
    log_level: str = "INFO"
    log_json: bool = False

    @property
    def ai_enabled(self) -> bool:
        return bool(self.gemini_api_key and self.gemini_api_key.strip())


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from environment variables, ignoring unset ones."""
    env = os.environ if environ is None else environ
    values = {field: env[key] for key, field in _ENV_FIELDS.items() if key in env}
    if not (values.get("gemini_api_key") or "").strip():
        values["gemini_api_key"] = None
    return Settings(**values)
