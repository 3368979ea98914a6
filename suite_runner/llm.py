import os
from typing import Protocol

import anthropic
import openai
from anthropic.types import TextBlock
from dotenv import load_dotenv
from pydantic import BaseModel, Field

from suite_runner.config import settings


class CompletionRequest(BaseModel):
    model: str
    user_message: str
    system_prompt: str | None = None
    temperature: float | None = None
    max_tokens: int = Field(default=1024, gt=0)


class CompletionProvider(Protocol):
    """A chat model backend.

    Providers may also expose ``default_model``, used when neither the target
    nor the judge config names a model.
    """

    name: str

    def is_configured(self) -> bool: ...

    async def complete(self, request: CompletionRequest) -> str: ...


class AnthropicProvider:
    name = "anthropic"

    def __init__(self, api_key: str | None = None) -> None:
        self._api_key = api_key or settings.anthropic_api_key or None
        self._client: anthropic.AsyncAnthropic | None = None

    def is_configured(self) -> bool:
        if self._api_key:
            return True
        load_dotenv()
        return bool(os.environ.get("ANTHROPIC_API_KEY"))

    def get_client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            load_dotenv()
            self._client = anthropic.AsyncAnthropic(api_key=self._api_key)
        return self._client

    async def complete(self, request: CompletionRequest) -> str:
        kwargs: dict = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "messages": [{"role": "user", "content": request.user_message}],
        }
        if request.system_prompt:
            kwargs["system"] = request.system_prompt
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature

        response = await self.get_client().messages.create(**kwargs)

        if not response.content:
            raise ValueError("API returned empty content list")
        block = response.content[0]
        if not isinstance(block, TextBlock):
            raise ValueError(f"Unexpected content block type: {type(block)}")
        return block.text


class OpenAIProvider:
    name = "openai"

    def __init__(self, api_key: str | None = None) -> None:
        self._api_key = api_key or settings.openai_api_key or None
        self._client: openai.AsyncOpenAI | None = None

    @property
    def default_model(self) -> str:
        return settings.openai_model

    def is_configured(self) -> bool:
        if self._api_key:
            return True
        load_dotenv()
        return bool(os.environ.get("OPENAI_API_KEY"))

    def get_client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            load_dotenv()
            self._client = openai.AsyncOpenAI(api_key=self._api_key)
        return self._client

    async def complete(self, request: CompletionRequest) -> str:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.user_message})
        kwargs: dict = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "messages": messages,
        }
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature

        response = await self.get_client().chat.completions.create(**kwargs)

        if not response.choices:
            raise ValueError("API returned no choices")
        content = response.choices[0].message.content
        if not content:
            raise ValueError("API returned an empty message")
        return content


def default_providers() -> dict[str, CompletionProvider]:
    """Every known backend; ``is_configured`` decides which ones a run may use."""
    providers: list[CompletionProvider] = [AnthropicProvider(), OpenAIProvider()]
    return {p.name: p for p in providers}


def provider_default_model(provider: CompletionProvider | None, fallback: str) -> str:
    return getattr(provider, "default_model", None) or fallback
