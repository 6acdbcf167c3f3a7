from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Protocol

from dialogic.models import Message

logger = logging.getLogger(__name__)

PROVIDERS = ("openai", "anthropic", "gemini", "ollama")

ChunkCallback = Callable[[str], None]


class GatewayError(RuntimeError):
    pass


class MissingCredentialError(GatewayError):
    def __init__(self, provider: str) -> None:
        super().__init__(f"Missing API key for {provider}")
        self.provider = provider


class ProviderCallError(GatewayError):
    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"[{provider}] {message}")
        self.provider = provider


class GenerationAborted(GatewayError):
    def __init__(self, provider: str) -> None:
        super().__init__(f"[{provider}] generation aborted by user")
        self.provider = provider


class UnknownProviderError(ValueError):
    pass


class CancelToken(Protocol):
    def is_set(self) -> bool:
        ...


@dataclass
class ChatTurn:
    role: str
    content: str


def to_chat_turns(messages: Iterable[Message]) -> List[ChatTurn]:
    return [ChatTurn(role=message.role, content=message.content) for message in messages]


def to_role_dicts(system_instruction: str, turns: List[ChatTurn]) -> List[Dict[str, str]]:
    payload = [{"role": "system", "content": system_instruction}]
    payload.extend({"role": turn.role, "content": turn.content} for turn in turns)
    return payload


class ChatAdapter:
    """One backend behind the uniform streaming contract.

    Subclasses yield text fragments in whatever granularity their SDK offers
    from ``iter_text``; ``stream`` turns those into cumulative snapshots.
    """

    provider: str = "base"

    def iter_text(self, turns: List[ChatTurn], system_instruction: str) -> Iterator[str]:
        raise NotImplementedError

    def validate(self) -> None:
        raise NotImplementedError

    def stream(
        self,
        messages: Iterable[Message],
        system_instruction: str,
        on_chunk: Optional[ChunkCallback] = None,
        cancel: Optional[CancelToken] = None,
    ) -> str:
        turns = to_chat_turns(messages)
        self._check_cancel(cancel)
        full_text = ""
        try:
            for fragment in self.iter_text(turns, system_instruction):
                self._check_cancel(cancel)
                if not fragment:
                    continue
                full_text += fragment
                if on_chunk is not None:
                    on_chunk(full_text)
        except GatewayError:
            raise
        except Exception as exc:
            raise ProviderCallError(self.provider, str(exc)) from exc
        logger.debug("[%s] stream finished chars=%d", self.provider, len(full_text))
        return full_text

    def _check_cancel(self, cancel: Optional[CancelToken]) -> None:
        if cancel is not None and cancel.is_set():
            raise GenerationAborted(self.provider)
