"""Parsers that turn free-text evaluation reports into scored records."""

from .competitive import (
    COMPETITIVE_AXES,
    calculate_competitive_weighted_total,
    check_competitive_total,
    parse_competitive_evaluation,
)
from .models import (
    CompetitiveEvaluation,
    CompetitiveScores,
    ParseResult,
    TechnicalEvaluation,
    TechnicalScores,
    WeightedTotalCheck,
)
from .technical import (
    TECHNICAL_AXES,
    calculate_technical_weighted_total,
    check_technical_total,
    parse_technical_evaluation,
)

__all__ = [
    "COMPETITIVE_AXES",
    "TECHNICAL_AXES",
    "CompetitiveEvaluation",
    "CompetitiveScores",
    "ParseResult",
    "TechnicalEvaluation",
    "TechnicalScores",
    "WeightedTotalCheck",
    "calculate_competitive_weighted_total",
    "calculate_technical_weighted_total",
    "check_competitive_total",
    "check_technical_total",
    "parse_competitive_evaluation",
    "parse_technical_evaluation",
]
