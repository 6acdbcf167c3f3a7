from __future__ import annotations

from pathlib import Path
from typing import Dict, List

from dialogic.utils.io import write_text


def render_report(report: Dict) -> str:
    lines: List[str] = ["# Performance Report", ""]
    summary = (report.get("human_summary") or "").strip()
    lines.append(summary or "No summary was produced.")
    concepts = report.get("concepts_to_review") or []
    if concepts:
        lines.extend(["", "## Concepts to Review"])
        lines.extend([f"- {item}" for item in concepts])
    return "\n".join(lines).strip() + "\n"


def write_report(path: Path, report: Dict) -> None:
    write_text(path, render_report(report))
