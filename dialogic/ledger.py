from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence

from dialogic.models import Message

PRAISE_MARKERS = ("correct", "no mistakes")


@dataclass(frozen=True)
class MistakeLogEntry:
    user_input: str
    feedback: str


def _preceding_user_input(messages: Sequence[Message], index: int) -> str:
    for message in reversed(messages[:index]):
        if message.role == "user":
            # The hidden opener is never attributed as something the user said.
            return "" if message.is_hidden else message.content
    return ""


def build_mistake_log(messages: Sequence[Message]) -> List[MistakeLogEntry]:
    """Pair every visible piece of assistant feedback with the user input it answers.

    Always derived from the full message list; nothing here is cached.
    """
    entries: List[MistakeLogEntry] = []
    for index, message in enumerate(messages):
        if message.role != "assistant" or message.is_hidden or not message.feedback:
            continue
        entries.append(
            MistakeLogEntry(
                user_input=_preceding_user_input(messages, index),
                feedback=message.feedback,
            )
        )
    return entries


def is_praise(feedback: str) -> bool:
    lowered = feedback.lower()
    return any(marker in lowered for marker in PRAISE_MARKERS)


def corrective_entries(entries: Sequence[MistakeLogEntry]) -> List[MistakeLogEntry]:
    return [entry for entry in entries if entry.feedback and not is_praise(entry.feedback)]
