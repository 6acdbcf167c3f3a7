from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Dict, Iterator, List

from .llm_base import ChatAdapter, ChatTurn


@dataclass
class MockAdapter(ChatAdapter):
    scenario: str = "default"
    chunk_size: int = 16
    provider = "mock"

    def validate(self) -> None:
        return None

    def iter_text(self, turns: List[ChatTurn], system_instruction: str) -> Iterator[str]:
        text = self._build_text(turns, system_instruction)
        for start in range(0, len(text), self.chunk_size):
            yield text[start:start + self.chunk_size]

    def _build_text(self, turns: List[ChatTurn], system_instruction: str) -> str:
        if self.scenario == "garbage":
            return "Sorry, I cannot answer in JSON today."
        payload = self._build_payload(turns, system_instruction)
        text = json.dumps(payload, ensure_ascii=False)
        if self.scenario == "fenced":
            return f"```json\n{text}\n```"
        return text

    def _build_payload(self, turns: List[ChatTurn], system_instruction: str) -> Dict:
        if "concepts_to_review" in system_instruction:
            return {
                "human_summary": "### Core Concepts to Review\n- Past tense agreement\n- Article gender",
                "concepts_to_review": [
                    "Uses present tense where the preterite is required.",
                    "Mixes up gendered articles with feminine nouns.",
                ],
            }
        last_user = next((turn.content for turn in reversed(turns) if turn.role == "user"), "")
        return {
            "response": "¡Hola! Estamos en la estación de tren. ¿Adónde quieres viajar?",
            "feedback": f"Mock feedback for: {last_user[:40]}" if len(turns) > 1 else "",
        }
