from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Dict, List, Optional


ROLES = ("user", "assistant")


@dataclass
class Message:
    role: str
    content: str
    feedback: Optional[str] = None
    is_hidden: bool = False

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"Unsupported message role: {self.role}")

    def to_dict(self) -> Dict:
        payload: Dict = {"role": self.role, "content": self.content}
        if self.feedback is not None:
            payload["feedback"] = self.feedback
        if self.is_hidden:
            payload["isHidden"] = True
        return payload

    @classmethod
    def from_dict(cls, payload: Dict) -> "Message":
        return cls(
            role=payload["role"],
            content=payload.get("content") or "",
            feedback=payload.get("feedback"),
            is_hidden=bool(payload.get("isHidden", False)),
        )


@dataclass
class Conversation:
    id: str
    messages: List[Message] = field(default_factory=list)
    updated_at: int = 0
    report: Optional[str] = None

    def to_dict(self) -> Dict:
        payload: Dict = {
            "id": self.id,
            "messages": [message.to_dict() for message in self.messages],
            "updatedAt": self.updated_at,
        }
        if self.report is not None:
            payload["report"] = self.report
        return payload

    @classmethod
    def from_dict(cls, payload: Dict) -> "Conversation":
        return cls(
            id=payload["id"],
            messages=[Message.from_dict(item) for item in payload.get("messages", [])],
            updated_at=int(payload.get("updatedAt", 0)),
            report=payload.get("report"),
        )


@dataclass(frozen=True)
class UserProfile:
    language: str
    base_language: str
    level: str
    interests: str

    def __post_init__(self) -> None:
        missing = [
            name
            for name in ("language", "base_language", "level", "interests")
            if not str(getattr(self, name) or "").strip()
        ]
        if missing:
            raise ValueError(f"Profile is missing required fields: {', '.join(missing)}")

    def to_dict(self) -> Dict[str, str]:
        return {
            "language": self.language,
            "baseLanguage": self.base_language,
            "level": self.level,
            "interests": self.interests,
        }

    @classmethod
    def from_dict(cls, payload: Dict) -> "UserProfile":
        return cls(
            language=payload.get("language", ""),
            base_language=payload.get("baseLanguage", ""),
            level=payload.get("level", ""),
            interests=payload.get("interests", ""),
        )


class ScenarioState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    BOOTSTRAPPING = "bootstrapping"
    ACTIVE = "active"
    COMPLETE = "complete"
    REPORTED = "reported"


def count_user_turns(messages: List[Message]) -> int:
    return sum(1 for message in messages if message.role == "user" and not message.is_hidden)


def derive_state(messages: List[Message], has_report: bool, max_turns: int) -> ScenarioState:
    """Map a conversation snapshot onto its scenario state.

    Only visible user messages count as turns. The list holds settled
    messages only, so any assistant reply after the opener means the
    scenario is active, even when that reply came back empty.
    """
    if has_report:
        return ScenarioState.REPORTED
    if count_user_turns(messages) >= max_turns:
        return ScenarioState.COMPLETE
    if not messages:
        return ScenarioState.UNINITIALIZED
    if not any(message.role == "assistant" for message in messages):
        return ScenarioState.BOOTSTRAPPING
    return ScenarioState.ACTIVE
