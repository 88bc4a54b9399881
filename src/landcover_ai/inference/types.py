from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ClassifyOutput:
    label: str
    index: int
    score: float  # raw top score, kept for logs only
    model_id: str
