from __future__ import annotations

import logging
from typing import Iterator, List, Optional

from google import genai
from google.genai import types

from .llm_base import ChatAdapter, ChatTurn

logger = logging.getLogger(__name__)


def to_gemini_contents(turns: List[ChatTurn]) -> List[types.Content]:
    return [
        types.Content(
            role="model" if turn.role == "assistant" else "user",
            parts=[types.Part(text=turn.content)],
        )
        for turn in turns
    ]


class GeminiAdapter(ChatAdapter):
    provider = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.5-flash",
        validation_model: str = "gemini-2.0-flash-lite",
        client: Optional[genai.Client] = None,
    ) -> None:
        if not api_key:
            raise RuntimeError("Gemini API key is not set.")
        self.model = model
        self.validation_model = validation_model
        self.client = client or genai.Client(api_key=api_key)

    def validate(self) -> None:
        self.client.models.generate_content(model=self.validation_model, contents="hi")

    def iter_text(self, turns: List[ChatTurn], system_instruction: str) -> Iterator[str]:
        logger.info("[gemini] model=%s turns=%d", self.model, len(turns))
        stream = self.client.models.generate_content_stream(
            model=self.model,
            contents=to_gemini_contents(turns),
            config=types.GenerateContentConfig(system_instruction=system_instruction),
        )
        for chunk in stream:
            yield getattr(chunk, "text", None) or ""
