# insights.py
# =============================================================================
# Turns a free-text model analysis into structured insight fields.
# Everything here is pure: no I/O, no network, no clock.
# =============================================================================

from __future__ import annotations

import re
from typing import List, Optional, Sequence

from schemas import MacroAdjustments, Trend

DEFAULT_RECOMMENDATION = "Maintain current routine and monitor progress"
TREND_WINDOW = 5

_KEYWORD_RE = re.compile(r"recommend|suggest", re.IGNORECASE)
_MACRO_PATTERNS = {
    "calories": re.compile(r"calories to (\d+)", re.IGNORECASE),
    "protein": re.compile(r"protein to (\d+)", re.IGNORECASE),
    "carbs": re.compile(r"carbs to (\d+)", re.IGNORECASE),
    "fats": re.compile(r"fats to (\d+)", re.IGNORECASE),
}


def classify_trend(values_newest_first: Sequence[float]) -> Trend:
    """Classify up to the last TREND_WINDOW values by adjacent comparisons.

    Input is newest-first (the order the Record Store returns). With fewer
    than two values the result is ``improving``.
    """
    recent = list(values_newest_first[:TREND_WINDOW])
    recent.reverse()
    if len(recent) < 2:
        return "improving"

    up = down = 0
    for previous, current in zip(recent, recent[1:]):
        if current > previous:
            up += 1
        elif current < previous:
            down += 1

    if up > down:
        return "improving"
    if down > up:
        return "declining"
    return "stagnating"


def determine_trend(workouts: Sequence, weights: Sequence) -> Trend:
    """Workout weights win over body weights whenever any workouts exist."""
    source = workouts if workouts else weights
    return classify_trend([float(entry.weight) for entry in source])


def extract_recommendations(analysis: str) -> List[str]:
    if not analysis:
        return [DEFAULT_RECOMMENDATION]
    found = [
        line.strip()
        for line in analysis.split("\n")
        if _KEYWORD_RE.search(line)
    ]
    return found or [DEFAULT_RECOMMENDATION]


def extract_macro_adjustments(analysis: str) -> Optional[MacroAdjustments]:
    if not analysis:
        return None
    matched = {}
    for nutrient, pattern in _MACRO_PATTERNS.items():
        m = pattern.search(analysis)
        if m:
            matched[nutrient] = int(m.group(1))
    return MacroAdjustments(**matched) if matched else None
