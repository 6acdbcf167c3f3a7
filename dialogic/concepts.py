from __future__ import annotations

import logging
from typing import Iterable, List, Set

from dialogic.gates.parsers import decode_report

logger = logging.getLogger(__name__)


def aggregate_concepts(reports: Iterable[str]) -> Set[str]:
    concepts: Set[str] = set()
    for encoded in reports:
        decoded = decode_report(encoded)
        if decoded is None:
            logger.warning("[concepts] skipping unreadable report")
            continue
        concepts.update(item.strip() for item in decoded["concepts_to_review"] if item.strip())
    return concepts


def load_concepts(store, limit: int = 3) -> Set[str]:
    """Union of concepts from the ``limit`` most recently updated reported conversations."""
    reports: List[str] = store.recent_reports(limit)
    concepts = aggregate_concepts(reports)
    logger.info("[concepts] %d concept(s) from %d report(s)", len(concepts), len(reports))
    return concepts
