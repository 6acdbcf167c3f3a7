from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional

from dialogic.adapters.llm_base import PROVIDERS
from dialogic.models import Conversation, Message, UserProfile
from dialogic.utils.io import read_json, write_json
from dialogic.utils.time import now_ms

logger = logging.getLogger(__name__)

ACTIVE_PROVIDER_KEY = "active-provider"


def _provider_key(provider: str) -> str:
    return f"{provider}-key"


class JsonStore:
    """Credentials, profile and conversations kept as JSON files under one directory."""

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = Path(data_dir)
        self.credentials_path = self.data_dir / "credentials.json"
        self.profile_path = self.data_dir / "profile.json"
        self.session_path = self.data_dir / "session.json"
        self.conversations_dir = self.data_dir / "conversations"

    @classmethod
    def open(cls, data_dir: Path) -> "JsonStore":
        store = cls(data_dir)
        store.conversations_dir.mkdir(parents=True, exist_ok=True)
        return store

    # credentials

    def _credentials(self) -> Dict[str, str]:
        return read_json(self.credentials_path, default={}) or {}

    def get_provider_key(self, provider: str) -> Optional[str]:
        return self._credentials().get(_provider_key(provider))

    def set_provider_key(self, provider: str, secret: str) -> None:
        credentials = self._credentials()
        credentials[_provider_key(provider)] = secret
        write_json(self.credentials_path, credentials)

    def delete_provider_key(self, provider: str) -> None:
        credentials = self._credentials()
        if credentials.pop(_provider_key(provider), None) is not None:
            write_json(self.credentials_path, credentials)

    def get_active_provider(self) -> Optional[str]:
        return self._credentials().get(ACTIVE_PROVIDER_KEY)

    def set_active_provider(self, provider: str) -> None:
        credentials = self._credentials()
        credentials[ACTIVE_PROVIDER_KEY] = provider
        write_json(self.credentials_path, credentials)

    def clear_all_credentials(self) -> None:
        credentials = self._credentials()
        for key in [_provider_key(provider) for provider in PROVIDERS] + [ACTIVE_PROVIDER_KEY]:
            credentials.pop(key, None)
        write_json(self.credentials_path, credentials)
        logger.info("[store] credentials cleared")

    # profile

    def get_profile(self) -> Optional[UserProfile]:
        payload = read_json(self.profile_path)
        if not payload:
            return None
        return UserProfile.from_dict(payload)

    def save_profile(self, profile: UserProfile) -> None:
        write_json(self.profile_path, profile.to_dict())

    # active conversation

    def get_active_conversation(self) -> Optional[str]:
        return (read_json(self.session_path, default={}) or {}).get("activeConversation")

    def set_active_conversation(self, conversation_id: str) -> None:
        write_json(self.session_path, {"activeConversation": conversation_id})

    def clear_active_conversation(self) -> None:
        if self.session_path.exists():
            self.session_path.unlink()

    # conversations

    def _conversation_path(self, conversation_id: str) -> Path:
        if not conversation_id or "/" in conversation_id or conversation_id.startswith("."):
            raise ValueError(f"Invalid conversation id: {conversation_id!r}")
        return self.conversations_dir / f"{conversation_id}.json"

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        payload = read_json(self._conversation_path(conversation_id))
        if not payload:
            return None
        return Conversation.from_dict(payload)

    def save_conversation(self, conversation_id: str, messages: List[Message]) -> Conversation:
        existing = self.get_conversation(conversation_id)
        conversation = Conversation(
            id=conversation_id,
            messages=list(messages),
            updated_at=now_ms(),
            report=existing.report if existing else None,
        )
        write_json(self._conversation_path(conversation_id), conversation.to_dict())
        return conversation

    def save_conversation_report(self, conversation_id: str, report: str) -> None:
        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            logger.warning("[store] report for unknown conversation %s dropped", conversation_id)
            return
        conversation.report = report
        conversation.updated_at = now_ms()
        write_json(self._conversation_path(conversation_id), conversation.to_dict())

    def list_conversations(self) -> List[Conversation]:
        conversations: List[Conversation] = []
        for path in sorted(self.conversations_dir.glob("*.json")):
            payload = read_json(path)
            if payload:
                conversations.append(Conversation.from_dict(payload))
        return conversations

    def recent_reports(self, limit: int) -> List[str]:
        reported = [conversation for conversation in self.list_conversations() if conversation.report]
        reported.sort(key=lambda conversation: conversation.updated_at, reverse=True)
        return [conversation.report for conversation in reported[:limit]]
