from __future__ import annotations

import logging
from typing import Iterator, List, Optional

from openai import OpenAI

from .llm_base import ChatAdapter, ChatTurn, to_role_dicts

logger = logging.getLogger(__name__)


class OpenAIAdapter(ChatAdapter):
    provider = "openai"

    def __init__(self, api_key: str, model: str = "gpt-4o", client: Optional[OpenAI] = None) -> None:
        if not api_key:
            raise RuntimeError("OpenAI API key is not set.")
        self.model = model
        self.client = client or OpenAI(api_key=api_key, max_retries=0)

    def validate(self) -> None:
        self.client.models.list()

    def iter_text(self, turns: List[ChatTurn], system_instruction: str) -> Iterator[str]:
        logger.info("[openai] model=%s turns=%d", self.model, len(turns))
        stream = self.client.chat.completions.create(
            model=self.model,
            messages=to_role_dicts(system_instruction, turns),
            stream=True,
        )
        for chunk in stream:
            choices = getattr(chunk, "choices", None)
            if not choices:
                continue
            delta = getattr(choices[0], "delta", None)
            yield getattr(delta, "content", None) or ""
