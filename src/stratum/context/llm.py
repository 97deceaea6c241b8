"""Minimal chat-model seam used by the summarizer and topic scorers."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from stratum.core.errors import ErrorCode, StratumError

if TYPE_CHECKING:
    from anthropic import AsyncAnthropic


@runtime_checkable
class ChatModel(Protocol):
    """Single-turn text completion."""

    async def complete(self, system: str, prompt: str, max_tokens: int) -> str: ...


@dataclass
class AnthropicChatModel:
    """Chat model backed by the Anthropic Messages API.

    The SDK is optional; it is imported the first time a request is made.
    """

    model: str = "claude-3-5-haiku-latest"
    api_key: str | None = None
    base_url: str | None = None
    _client: AsyncAnthropic | None = field(default=None, init=False, repr=False)

    def _get_client(self) -> AsyncAnthropic:
        """Get or create the Anthropic client."""
        if self._client is None:
            try:
                from anthropic import AsyncAnthropic
            except ImportError as e:
                raise ImportError(
                    "Anthropic not installed. Run: pip install stratum[llm]"
                ) from e
            api_key = self.api_key or os.environ.get("ANTHROPIC_API_KEY")
            if not api_key:
                raise StratumError(
                    ErrorCode.PROVIDER_AUTH_MISSING,
                    context={"provider": "anthropic", "var": "ANTHROPIC_API_KEY"},
                )
            self._client = AsyncAnthropic(api_key=api_key, base_url=self.base_url)
        return self._client

    async def complete(self, system: str, prompt: str, max_tokens: int) -> str:
        client = self._get_client()
        try:
            response = await client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            )
        except Exception as e:
            raise StratumError(
                ErrorCode.PROVIDER_UNAVAILABLE,
                context={"provider": "anthropic", "detail": str(e)},
                cause=e,
            ) from e
        return "".join(block.text for block in response.content if block.type == "text")
