"""Generative model client used by the pricing advisor."""

from abc import ABC, abstractmethod
from typing import Optional

import google.generativeai as genai
import structlog
from google.api_core import exceptions

from ..config import DEFAULT_MODEL, Settings
from ..domain.errors import NetworkError, ParseError

logger = structlog.get_logger()


class PricingModel(ABC):
    """Text-in, text-out generative model."""

    @abstractmethod
    async def generate(self, prompt: str) -> str:
        """Return the model's text response for prompt."""
        pass


class GeminiPricingModel(PricingModel):
    """Google Gemini model behind the PricingModel interface."""

    def __init__(self, api_key: str, model_name: str = DEFAULT_MODEL):
        genai.configure(api_key=api_key)
        self.model_name = model_name
        self.model = genai.GenerativeModel(model_name)
        logger.info("pricing_model_init", model=model_name)

    async def generate(self, prompt: str) -> str:
        try:
            response = await self.model.generate_content_async(prompt)
        except exceptions.ResourceExhausted as e:
            logger.warning("gemini_quota_exhausted", model=self.model_name)
            raise NetworkError(f"Gemini quota exhausted: {e}") from e
        except exceptions.GoogleAPIError as e:
            raise NetworkError(f"Gemini request failed: {e}") from e
        try:
            text = response.text
        except ValueError as e:
            # No candidate text, e.g. the response was blocked
            raise ParseError(f"Gemini returned no text: {e}") from e
        if not text or not text.strip():
            raise ParseError("Gemini returned an empty response")
        return text


def create_pricing_model(settings: Settings) -> Optional[PricingModel]:
    """Build the configured model, or None when no API key is set."""
    if not settings.ai_enabled:
        logger.info("pricing_model_disabled", reason="no_api_key")
        return None
    return GeminiPricingModel(settings.gemini_api_key.strip(), settings.gemini_model)
