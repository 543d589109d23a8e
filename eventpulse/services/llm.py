import asyncio
from typing import Optional, Protocol

from openai import AsyncOpenAI, OpenAIError
import structlog

from eventpulse.core.errors import GenerationError

logger = structlog.get_logger()


class TextGenerator(Protocol):
    async def complete(self, prompt: str, max_tokens: int) -> str:
        ...


def get_openai_client(api_key: Optional[str], base_url: Optional[str] = None) -> Optional[AsyncOpenAI]:
    """Get an async OpenAI client, or None when no usable key is configured"""
    if not api_key or "your_" in api_key:
        return None
    # Retries are the caller's decision, never the SDK's
    return AsyncOpenAI(api_key=api_key, base_url=base_url or None, max_retries=0)


class OpenAIGenerator:
    """Chat-completions backed text generator with a hard timeout"""

    def __init__(
            self,
            client: Optional[AsyncOpenAI],
            model: str,
            timeout: float = 20.0,
            system_prompt: str = "You are an expert analytics SQL engineer."
    ):
        self.client = client
        self.model = model
        self.timeout = timeout
        self.system_prompt = system_prompt

    async def complete(self, prompt: str, max_tokens: int) -> str:
        if self.client is None:
            raise GenerationError("Text generation is unavailable: no LLM API key configured")

        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": self.system_prompt},
                        {"role": "user", "content": prompt},
                    ],
                    max_tokens=max_tokens,
                    temperature=0,
                ),
                self.timeout
            )
        except asyncio.TimeoutError:
            logger.error("llm_timeout", model=self.model, timeout=self.timeout)
            raise GenerationError(f"Text generation timed out after {self.timeout}s")
        except OpenAIError as e:
            logger.error("llm_request_failed", model=self.model, error=str(e))
            raise GenerationError("Text generation service failed")

        if not response.choices:
            raise GenerationError("Text generation returned no choices")
        return response.choices[0].message.content or ""
