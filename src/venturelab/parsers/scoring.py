"""
Shared extraction helpers and the weighted-total formula.

Score labels are written as ``<label>（<weight>％）：<score>``; the score may be
wrapped in full-width or ASCII brackets. A label may carry a perspective
qualifier such as ``（自社視点）`` between the name and the weight.
"""

import math
import re
from dataclasses import dataclass
from typing import Any

SCORE_MIN = 1
SCORE_MAX = 5

_SEPARATOR = r"[：:]\s*"
_PERSPECTIVE = r"(?:（[^）\n]*視点）)?"


@dataclass(frozen=True)
class Axis:
    """One rubric axis: record field, report label, weight in percent."""

    key: str
    label: str
    weight: int

    @property
    def pattern(self) -> re.Pattern[str]:
        return re.compile(
            re.escape(self.label)
            + _PERSPECTIVE
            + rf"[（(]{self.weight}[％%][）)]"
            + _SEPARATOR
            + r"[［\[]?(\d+)[］\]]?"
        )


def extract_score(text: str, pattern: re.Pattern[str]) -> int | None:
    """Return the first matched score if it lies in 1-5, else None."""
    match = pattern.search(text)
    if not match:
        return None
    score = int(match.group(1))
    if SCORE_MIN <= score <= SCORE_MAX:
        return score
    return None


def extract_choice(text: str, pattern: re.Pattern[str], choices: tuple[str, ...]) -> str | None:
    match = pattern.search(text)
    if not match:
        return None
    value = match.group(1)
    return value if value in choices else None


def extract_line(text: str, pattern: re.Pattern[str]) -> str | None:
    match = pattern.search(text)
    if not match:
        return None
    value = match.group(1).strip()
    return value or None


def labelled_total_pattern(axis_count: int) -> re.Pattern[str]:
    return re.compile(rf"{axis_count}項目の加重合計[（(]100点満点[）)]" + _SEPARATOR + r"(\d+(?:\.\d)?)")


def extract_weighted_total(text: str, pattern: re.Pattern[str]) -> float | None:
    """Reported total, accepted only within 0-100."""
    match = pattern.search(text)
    if not match:
        return None
    value = float(match.group(1))
    if 0 <= value <= 100:
        return value
    return None


def round_half_up(value: float, digits: int = 1) -> float:
    factor = 10**digits
    return math.floor(value * factor + 0.5) / factor


def weighted_total(scores: Any, axes: tuple[Axis, ...]) -> float | None:
    """
    Recompute a weighted total from per-axis scores.

    Formula: round(sum(weight_i * score_i) / 5, 1). Weights sum to 100 and
    scores run 1-5, so the result lies in 20-100.

    Args:
        scores: Score dataclass whose fields are named by ``axes``
        axes: Rubric definition

    Returns:
        Total, or None if any axis is missing
    """
    weighted = 0
    for axis in axes:
        score = getattr(scores, axis.key)
        if score is None:
            return None
        weighted += axis.weight * score
    return round_half_up(weighted / 5, 1)


def scores_from_text(text: str, axes: tuple[Axis, ...], score_cls: type) -> tuple[Any, list[str]]:
    """Extract every axis of a rubric, collecting one error per missing axis."""
    values = {axis.key: extract_score(text, axis.pattern) for axis in axes}
    errors = [f"{axis.label}のスコアを抽出できませんでした" for axis in axes if values[axis.key] is None]
    return score_cls(**values), errors
