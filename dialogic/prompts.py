from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from string import Template
from typing import Iterable, List, Optional, Sequence

from dialogic.ledger import MistakeLogEntry, corrective_entries
from dialogic.models import UserProfile
from dialogic.utils.io import read_text

PROMPTS_DIR = Path(__file__).resolve().parent / "configs" / "prompts"

JSON_ONLY_DIRECTIVE = (
    "CRITICAL: Your entire output MUST be a valid JSON object. Do not include markdown "
    "code blocks (like ```json), greetings, or any text outside of the JSON object."
)
NO_MISTAKES_LINE = "No significant mistakes were recorded."
REPORT_REQUEST = "The scenario is over. Generate the performance report now."


@lru_cache(maxsize=None)
def _template(name: str) -> Template:
    return Template(read_text(PROMPTS_DIR / f"{name}.md").strip("\n"))


def _mistakes_section(mistake_log: Sequence[MistakeLogEntry]) -> str:
    entries = corrective_entries(mistake_log)
    if not entries:
        return ""
    formatted = "\n\n".join(
        f'User: "{entry.user_input}"\nFeedback: "{entry.feedback}"' for entry in entries
    )
    return "\n\n" + _template("past_mistakes").substitute(mistakes=formatted)


def _review_section(concepts: Optional[Iterable[str]], interests: str) -> str:
    ordered: List[str] = sorted(set(concepts or ()))
    if not ordered:
        return ""
    formatted = "\n".join(f"- {concept}" for concept in ordered)
    return "\n\n" + _template("historical_weaknesses").substitute(
        concepts=formatted, interests=interests
    )


def build_system_prompt(
    profile: UserProfile,
    mistake_log: Sequence[MistakeLogEntry] = (),
    concepts: Optional[Iterable[str]] = None,
) -> str:
    return _template("scenario_system").substitute(
        language=profile.language,
        base_language=profile.base_language,
        level=profile.level,
        interests=profile.interests,
        review_section=_review_section(concepts, profile.interests),
        mistakes_section=_mistakes_section(mistake_log),
        json_directive=JSON_ONLY_DIRECTIVE,
    ).strip()


def build_report_prompt(profile: UserProfile, mistake_log: Sequence[MistakeLogEntry]) -> str:
    formatted = "\n".join(
        f'- User said: "{entry.user_input}"\n  Feedback: "{entry.feedback}"'
        for entry in mistake_log
        if entry.feedback
    )
    return _template("report_system").substitute(
        language=profile.language,
        base_language=profile.base_language,
        level=profile.level,
        mistakes=formatted or NO_MISTAKES_LINE,
        json_directive=JSON_ONLY_DIRECTIVE,
    ).strip()
