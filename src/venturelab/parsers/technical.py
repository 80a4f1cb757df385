"""Parser for the 8-axis technical evaluation report."""

import re

from .models import ParseResult, TechnicalEvaluation, TechnicalScores, WeightedTotalCheck
from .scoring import (
    Axis,
    extract_choice,
    extract_line,
    extract_weighted_total,
    labelled_total_pattern,
    scores_from_text,
    weighted_total,
)

TECHNICAL_AXES: tuple[Axis, ...] = (
    Axis("scientific_validity", "科学的妥当性", 20),
    Axis("manufacturing_feasibility", "製造実現性", 15),
    Axis("performance_advantage", "性能優位", 20),
    Axis("gross_margin", "粗利率", 20),
    Axis("market_attractiveness", "市場魅力度", 10),
    Axis("regulatory_safety", "規制・安全環境", 5),
    Axis("ip_protection", "知財防衛", 5),
    Axis("strategic_fit", "戦略適合", 5),
)

ATTRACTIVENESS_CHOICES = ("高", "中（戦略要修正）", "低")
URGENCY_CHOICES = ("ぜひ欲しい", "あると良い", "無くても困らない")

ATTRACTIVENESS_PATTERN = re.compile(r"当該テーマの魅力度[：:]\s*(高|中（戦略要修正）|低)")
WEIGHTED_TOTAL_PATTERN = labelled_total_pattern(len(TECHNICAL_AXES))
URGENCY_PATTERN = re.compile(
    r"顧客にとっての切迫度[（(][^）)]+[）)][：:]\s*(ぜひ欲しい|あると良い|無くても困らない)"
)
MIN_TECH_LEVEL_PATTERN = re.compile(r"最低限達成すべき技術水準[：:]\s*(.+?)(?:\n|$)")
SUMMARY_PATTERN = re.compile(
    r"当該テーマについての総評[：:]\s*(.+?)(?=\n(?:顧客にとっての切迫度|スコア詳細)|\Z)",
    re.DOTALL,
)


def parse_technical_evaluation(text: str) -> ParseResult[TechnicalEvaluation]:
    """
    Parse a technical evaluation report into a typed record.

    Args:
        text: Raw report text

    Returns:
        ParseResult; data is always populated, success is False if any score,
        the verdict or the reported total is missing
    """
    scores, errors = scores_from_text(text, TECHNICAL_AXES, TechnicalScores)

    attractiveness = extract_choice(text, ATTRACTIVENESS_PATTERN, ATTRACTIVENESS_CHOICES)
    if attractiveness is None:
        errors.append("当該テーマの魅力度を抽出できませんでした")

    total = extract_weighted_total(text, WEIGHTED_TOTAL_PATTERN)
    if total is None:
        errors.append(f"{len(TECHNICAL_AXES)}項目の加重合計を抽出できませんでした")

    data = TechnicalEvaluation(
        attractiveness=attractiveness,  # type: ignore[arg-type]
        scores=scores,
        weighted_total=total,
        summary=extract_line(text, SUMMARY_PATTERN),
        urgency=extract_choice(text, URGENCY_PATTERN, URGENCY_CHOICES),
        minimum_tech_level=extract_line(text, MIN_TECH_LEVEL_PATTERN),
    )
    return ParseResult(success=not errors, data=data, errors=errors, raw_text=text)


def calculate_technical_weighted_total(scores: TechnicalScores) -> float | None:
    """round((20a + 15b + 20c + 20d + 10e + 5f + 5g + 5h) / 5, 1); None if any axis is missing."""
    return weighted_total(scores, TECHNICAL_AXES)


def check_technical_total(evaluation: TechnicalEvaluation) -> WeightedTotalCheck:
    return WeightedTotalCheck(
        reported=evaluation.weighted_total,
        calculated=calculate_technical_weighted_total(evaluation.scores),
    )
