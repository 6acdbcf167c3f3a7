from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from jsonschema import ValidationError, validate

from dialogic.utils.io import read_text

logger = logging.getLogger(__name__)

SCHEMAS_DIR = Path(__file__).resolve().parents[1] / "schemas"

TURN_SCHEMA = "turn_envelope.schema.json"
REPORT_SCHEMA = "report_envelope.schema.json"

FALLBACK_RESPONSE = (
    "Lo siento, ha ocurrido un error en mi procesamiento. ¿Podemos intentarlo de nuevo?"
)
FALLBACK_FEEDBACK_PREFIX = "[System Error] Failed to parse LLM output as JSON. Raw output: "
FALLBACK_SUMMARY_PREFIX = (
    "The performance report could not be generated because the model output "
    "was not valid JSON. Raw output: "
)
DEFAULT_SNIPPET_CHARS = 100

_OPEN_FENCE = re.compile(r"^```[A-Za-z0-9_-]*[ \t]*\n?")
_CLOSE_FENCE = re.compile(r"\n?```$")


@dataclass(frozen=True)
class Decoded:
    payload: Dict[str, Any]
    ok: bool = True


@dataclass(frozen=True)
class Fallback:
    payload: Dict[str, Any]
    reason: str
    ok: bool = False


ParseResult = Union[Decoded, Fallback]


def _strip_code_fences(text: str) -> str:
    if not text.startswith("```"):
        return text
    stripped = _OPEN_FENCE.sub("", text, count=1)
    stripped = _CLOSE_FENCE.sub("", stripped, count=1)
    return stripped.strip()


def _try_parse(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None


@lru_cache(maxsize=None)
def _load_schema(name: str) -> Dict:
    return json.loads(read_text(SCHEMAS_DIR / name))


def _snippet(raw_text: Any, limit: int) -> str:
    return (raw_text if isinstance(raw_text, str) else str(raw_text or ""))[:limit]


def decode_envelope(raw_text: str, schema_name: str) -> Optional[Dict[str, Any]]:
    """Strictly decode one envelope object, or return None."""
    if not isinstance(raw_text, str):
        return None
    parsed = _try_parse(_strip_code_fences(raw_text.strip()))
    if not isinstance(parsed, dict):
        return None
    try:
        validate(instance=parsed, schema=_load_schema(schema_name))
    except ValidationError as exc:
        logger.warning("[parser] %s rejected: %s", schema_name, exc.message)
        return None
    return parsed


def turn_fallback(raw_text: Any, snippet_chars: int = DEFAULT_SNIPPET_CHARS) -> Dict[str, str]:
    return {
        "response": FALLBACK_RESPONSE,
        "feedback": f"{FALLBACK_FEEDBACK_PREFIX}{_snippet(raw_text, snippet_chars)}...",
    }


def report_fallback(raw_text: Any, snippet_chars: int = DEFAULT_SNIPPET_CHARS) -> Dict[str, Any]:
    return {
        "human_summary": f"{FALLBACK_SUMMARY_PREFIX}{_snippet(raw_text, snippet_chars)}...",
        "concepts_to_review": [],
    }


def parse_turn(raw_text: str, snippet_chars: int = DEFAULT_SNIPPET_CHARS) -> ParseResult:
    try:
        parsed = decode_envelope(raw_text, TURN_SCHEMA)
    except Exception as exc:
        logger.warning("[parser] unexpected failure decoding turn: %s", exc)
        parsed = None
    if parsed is None:
        logger.warning("[parser] turn fallback raw=%r", _snippet(raw_text, snippet_chars))
        return Fallback(payload=turn_fallback(raw_text, snippet_chars), reason="malformed turn envelope")
    return Decoded(
        payload={
            "response": parsed.get("response") or "",
            "feedback": parsed.get("feedback") or "",
        }
    )


def parse_report(raw_text: str, snippet_chars: int = DEFAULT_SNIPPET_CHARS) -> ParseResult:
    try:
        parsed = decode_envelope(raw_text, REPORT_SCHEMA)
    except Exception as exc:
        logger.warning("[parser] unexpected failure decoding report: %s", exc)
        parsed = None
    if parsed is None:
        logger.warning("[parser] report fallback raw=%r", _snippet(raw_text, snippet_chars))
        return Fallback(payload=report_fallback(raw_text, snippet_chars), reason="malformed report envelope")
    concepts: List[str] = list(parsed.get("concepts_to_review") or [])
    return Decoded(
        payload={
            "human_summary": parsed.get("human_summary") or "",
            "concepts_to_review": concepts,
        }
    )


def encode_report(payload: Dict[str, Any]) -> str:
    return json.dumps(
        {
            "human_summary": payload.get("human_summary") or "",
            "concepts_to_review": list(payload.get("concepts_to_review") or []),
        },
        ensure_ascii=False,
    )


def decode_report(encoded: Optional[str]) -> Optional[Dict[str, Any]]:
    if not encoded:
        return None
    parsed = decode_envelope(encoded, REPORT_SCHEMA)
    if parsed is None:
        return None
    return {
        "human_summary": parsed.get("human_summary") or "",
        "concepts_to_review": list(parsed.get("concepts_to_review") or []),
    }
