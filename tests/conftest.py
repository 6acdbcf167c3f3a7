from __future__ import annotations

import json
from typing import Callable, Iterator, List, Optional, Union

import pytest

from dialogic.adapters.gateway import ProviderGateway
from dialogic.adapters.llm_base import ChatAdapter, ChatTurn
from dialogic.config import ModelConfig, Settings
from dialogic.models import UserProfile
from dialogic.store import JsonStore


Reply = Union[str, Exception, Callable[[], Iterator[str]]]


class ScriptedAdapter(ChatAdapter):
    provider = "scripted"

    def __init__(self, replies: Optional[List[Reply]] = None, chunk_size: int = 7) -> None:
        self.replies: List[Reply] = list(replies or [])
        self.chunk_size = chunk_size
        self.calls: List[dict] = []
        self.cancel_after_first_chunk = None

    def validate(self) -> None:
        return None

    def iter_text(self, turns: List[ChatTurn], system_instruction: str) -> Iterator[str]:
        self.calls.append({"turns": list(turns), "instruction": system_instruction})
        reply = self.replies.pop(0) if self.replies else turn_json("Sigamos.", "")
        if isinstance(reply, Exception):
            raise reply
        for start in range(0, len(reply), self.chunk_size):
            yield reply[start:start + self.chunk_size]
            if self.cancel_after_first_chunk is not None:
                self.cancel_after_first_chunk.set()


def turn_json(response: str, feedback: str) -> str:
    return json.dumps({"response": response, "feedback": feedback}, ensure_ascii=False)


def report_json(summary: str, concepts: List[str]) -> str:
    return json.dumps({"human_summary": summary, "concepts_to_review": concepts}, ensure_ascii=False)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        data_dir=tmp_path / "data",
        max_turns=2,
        recent_reports=3,
        models={
            "openai": ModelConfig(chat="gpt-4o"),
            "anthropic": ModelConfig(chat="claude-3-5-sonnet-latest", validate="claude-3-haiku-20240307"),
            "gemini": ModelConfig(chat="gemini-2.5-flash", validate="gemini-2.0-flash-lite"),
            "ollama": ModelConfig(chat="llama3"),
        },
    )


@pytest.fixture
def store(settings) -> JsonStore:
    return JsonStore.open(settings.data_dir)


@pytest.fixture
def profile() -> UserProfile:
    return UserProfile(language="Spanish", base_language="English", level="B1", interests="travel")


@pytest.fixture
def adapter() -> ScriptedAdapter:
    return ScriptedAdapter()


@pytest.fixture
def gateway(settings, store, adapter) -> ProviderGateway:
    store.set_provider_key("scripted", "test-key")
    return ProviderGateway(settings, store, factories={"scripted": lambda _settings, _secret: adapter})
