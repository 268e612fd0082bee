"""
Completion service: turns a prompt into text, optionally JSON-structured
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional

import openai

from agent_orchestration.core.errors import CompletionServiceError

logger = logging.getLogger(__name__)

JSON_OBJECT = "json_object"


class CompletionService(ABC):
    """Text-generation collaborator used for planning and LLM agents"""

    @abstractmethod
    async def complete(self, prompt: str, temperature: float = 0.7,
                       max_tokens: int = 1000,
                       response_format: Optional[str] = None) -> str:
        """Return the completion text for prompt"""


class OpenAICompletionService(CompletionService):
    """Completion service backed by the OpenAI chat completions API"""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.model = config.get('model', 'gpt-4o-mini')
        self.system_message = config.get('system_message', 'You are an AI assistant.')
        self._client = None

    @property
    def client(self) -> openai.AsyncOpenAI:
        # Created on first use so a missing key only fails actual calls
        if self._client is None:
            api_key = self.config.get('openai_api_key')
            if api_key:
                self._client = openai.AsyncOpenAI(api_key=api_key)
            else:
                self._client = openai.AsyncOpenAI()
        return self._client

    async def complete(self, prompt: str, temperature: float = 0.7,
                       max_tokens: int = 1000,
                       response_format: Optional[str] = None) -> str:
        request = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": self.system_message},
                {"role": "user", "content": prompt}
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if response_format:
            request["response_format"] = {"type": response_format}

        try:
            response = await self.client.chat.completions.create(**request)
        except openai.OpenAIError as e:
            logger.error(f"Completion request failed: {e}")
            raise CompletionServiceError(f"Completion request failed: {e}", e)

        content = response.choices[0].message.content
        if content is None:
            raise CompletionServiceError("Completion returned no content")
        return content
