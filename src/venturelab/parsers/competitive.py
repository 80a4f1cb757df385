"""Parser for the 7-axis competitive (business entry) evaluation report."""

import re

from .models import CompetitiveEvaluation, CompetitiveScores, ParseResult, WeightedTotalCheck
from .scoring import (
    Axis,
    extract_choice,
    extract_line,
    extract_weighted_total,
    labelled_total_pattern,
    scores_from_text,
    weighted_total,
)

COMPETITIVE_AXES: tuple[Axis, ...] = (
    Axis("asset_transferability", "資産転用性", 20),
    Axis("investment_recovery", "投資・運転と回収見通し", 20),
    Axis("supply_chain_feasibility", "サプライチェーン実現性", 15),
    Axis("regulatory_compliance", "規制・安全適合", 15),
    Axis("fto_ip_freedom", "FTO／知財自由度", 10),
    Axis("channel_fit", "チャネル適合", 10),
    Axis("partner_availability", "パートナー入手性", 10),
)

ATTRACTIVENESS_CHOICES = ("高", "中（戦略要修正）", "低")
LEVEL_CHOICES = ("高", "中", "低")
ENTRY_METHODS = ("自社開発（内製）", "共同推進（パートナー連携）", "外部調達（買収・ライセンス・OEM）")

# The company name that prefixes these labels varies per deployment.
ATTRACTIVENESS_PATTERN = re.compile(r"事業価値×参入確率に基づく魅力度[：:]\s*(高|中（戦略要修正）|低)")
ENTRY_PROBABILITY_PATTERN = re.compile(r"参入確率[：:]\s*(高|中|低)")
WEIGHTED_TOTAL_PATTERN = labelled_total_pattern(len(COMPETITIVE_AXES))
ENTRY_METHOD_PATTERN = re.compile(
    r"参入方式[：:]\s*(" + "|".join(re.escape(m) for m in ENTRY_METHODS) + r")(?:（([^）]+)）)?"
)
COMPETITORS_PATTERN = re.compile(r"想定競合[：:]\s*(.+?)(?:\n|$)")
DEV_PERIOD_PATTERN = re.compile(r"開発期間[：:]\s*(.+?)(?:\n|$)")
DEV_COST_PATTERN = re.compile(r"開発コスト[：:]\s*(.+?)(?:\n|$)")
BARRIER_HEIGHT_PATTERN = re.compile(r"参入障壁高さ[：:]\s*(高|中|低)")


def _extract_entry_method(text: str) -> str | None:
    match = ENTRY_METHOD_PATTERN.search(text)
    if not match:
        return None
    if match.group(2):
        return f"{match.group(1)}（{match.group(2)}）"
    return match.group(1)


def _extract_competitors(text: str) -> list[str] | None:
    line = extract_line(text, COMPETITORS_PATTERN)
    if line is None:
        return None
    names = [name.strip() for name in re.split(r"[、,]", line)]
    return [name for name in names if name] or None


def parse_competitive_evaluation(text: str) -> ParseResult[CompetitiveEvaluation]:
    """
    Parse a competitive evaluation report into a typed record.

    Args:
        text: Raw report text

    Returns:
        ParseResult; data is always populated, success is False if any score,
        the verdict, the entry probability or the reported total is missing
    """
    scores, errors = scores_from_text(text, COMPETITIVE_AXES, CompetitiveScores)

    attractiveness = extract_choice(text, ATTRACTIVENESS_PATTERN, ATTRACTIVENESS_CHOICES)
    if attractiveness is None:
        errors.append("事業価値×参入確率に基づく魅力度を抽出できませんでした")

    entry_probability = extract_choice(text, ENTRY_PROBABILITY_PATTERN, LEVEL_CHOICES)
    if entry_probability is None:
        errors.append("参入確率を抽出できませんでした")

    total = extract_weighted_total(text, WEIGHTED_TOTAL_PATTERN)
    if total is None:
        errors.append(f"{len(COMPETITIVE_AXES)}項目の加重合計を抽出できませんでした")

    data = CompetitiveEvaluation(
        attractiveness=attractiveness,  # type: ignore[arg-type]
        entry_probability=entry_probability,  # type: ignore[arg-type]
        scores=scores,
        weighted_total=total,
        entry_method=_extract_entry_method(text),
        competitors=_extract_competitors(text),
        development_period=extract_line(text, DEV_PERIOD_PATTERN),
        development_cost=extract_line(text, DEV_COST_PATTERN),
        barrier_height=extract_choice(text, BARRIER_HEIGHT_PATTERN, LEVEL_CHOICES),  # type: ignore[arg-type]
    )
    return ParseResult(success=not errors, data=data, errors=errors, raw_text=text)


def calculate_competitive_weighted_total(scores: CompetitiveScores) -> float | None:
    """round((20a + 20b + 15c + 15d + 10e + 10f + 10g) / 5, 1); None if any axis is missing."""
    return weighted_total(scores, COMPETITIVE_AXES)


def check_competitive_total(evaluation: CompetitiveEvaluation) -> WeightedTotalCheck:
    return WeightedTotalCheck(
        reported=evaluation.weighted_total,
        calculated=calculate_competitive_weighted_total(evaluation.scores),
    )
