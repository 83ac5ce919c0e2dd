"""
LLM service using OpenAI.
Provides a clean interface for generating conversation replies.
"""

import logging
import openai
from typing import Optional, Dict, List

from app.config.settings import settings
from app.core.exceptions import UpstreamError

logger = logging.getLogger(__name__)


class OpenAILLMService:
    """Service for LLM operations using OpenAI API."""

    def __init__(self):
        """Initialize the LLM service."""
        self.api_key = settings.openai_api_key
        self.client = None

    async def initialize(self):
        """
        Initialize the LLM service.
        Creates an OpenAI client instance for other services to use.
        """
        self.client = openai.AsyncClient(api_key=self.api_key)
        logger.info("LLM service initialized")
        return True

    async def chat_completion(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None
    ) -> str:
        """
        Generate a single, non-streamed chat completion.

        Args:
            messages: OpenAI chat messages (system, user, assistant)
            model: Model name, defaults to settings.openai_chat_model
            max_tokens: Maximum tokens for the reply
            temperature: Sampling temperature

        Returns:
            str: Reply text, stripped

        Raises:
            UpstreamError: when the OpenAI call fails
        """
        if self.client is None:
            await self.initialize()

        try:
            response = await self.client.chat.completions.create(
                model=model or settings.openai_chat_model,
                messages=messages,
                max_tokens=max_tokens or settings.openai_max_tokens,
                temperature=settings.openai_temperature if temperature is None else temperature,
            )
            content = response.choices[0].message.content or ""
            logger.debug(f"LLM reply ({len(content)} chars)")
            return content.strip()
        except openai.OpenAIError as e:
            logger.error(f"OpenAI completion failed: {e}")
            raise UpstreamError(f"LLM request failed: {e}")


# Global LLM service instance
openai_llm_service = OpenAILLMService()
