from __future__ import annotations

import logging
from typing import Iterator, List, Optional

import anthropic

from .llm_base import ChatAdapter, ChatTurn

logger = logging.getLogger(__name__)


class AnthropicAdapter(ChatAdapter):
    provider = "anthropic"

    def __init__(
        self,
        api_key: str,
        model: str = "claude-3-5-sonnet-latest",
        validation_model: str = "claude-3-haiku-20240307",
        max_tokens: int = 4096,
        client: Optional[anthropic.Anthropic] = None,
    ) -> None:
        if not api_key:
            raise RuntimeError("Anthropic API key is not set.")
        self.model = model
        self.validation_model = validation_model
        self.max_tokens = max_tokens
        self.client = client or anthropic.Anthropic(api_key=api_key, max_retries=0)

    def validate(self) -> None:
        self.client.messages.create(
            model=self.validation_model,
            max_tokens=1,
            messages=[{"role": "user", "content": "hi"}],
        )

    def iter_text(self, turns: List[ChatTurn], system_instruction: str) -> Iterator[str]:
        logger.info("[anthropic] model=%s turns=%d", self.model, len(turns))
        stream = self.client.messages.create(
            model=self.model,
            system=system_instruction,
            messages=[{"role": turn.role, "content": turn.content} for turn in turns],
            max_tokens=self.max_tokens,
            stream=True,
        )
        for event in stream:
            if getattr(event, "type", None) != "content_block_delta":
                continue
            delta = event.delta
            if getattr(delta, "type", None) == "text_delta":
                yield delta.text
