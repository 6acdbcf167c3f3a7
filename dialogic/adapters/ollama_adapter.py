from __future__ import annotations

import logging
from typing import Iterator, List, Optional

import ollama

from .llm_base import ChatAdapter, ChatTurn, to_role_dicts

logger = logging.getLogger(__name__)

DEFAULT_HOST = "http://localhost:11434"


class OllamaAdapter(ChatAdapter):
    """Local backend; the stored "secret" is the host URL."""

    provider = "ollama"

    def __init__(
        self,
        host: Optional[str] = None,
        model: str = "llama3",
        client: Optional[ollama.Client] = None,
    ) -> None:
        self.host = host or DEFAULT_HOST
        self.model = model
        self.client = client or ollama.Client(host=self.host)

    def validate(self) -> None:
        self.client.list()

    def iter_text(self, turns: List[ChatTurn], system_instruction: str) -> Iterator[str]:
        logger.info("[ollama] host=%s model=%s turns=%d", self.host, self.model, len(turns))
        stream = self.client.chat(
            model=self.model,
            messages=to_role_dicts(system_instruction, turns),
            stream=True,
        )
        for chunk in stream:
            message = chunk["message"]
            yield (message["content"] if message else "") or ""
