"""
Typed records produced by the evaluation report parsers.

Every score is an integer 1-5, or None when the report did not state one
(or stated something outside the range).
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Generic, Literal, TypeVar

Attractiveness = Literal["高", "中（戦略要修正）", "低"]
Level = Literal["高", "中", "低"]

T = TypeVar("T")


@dataclass
class TechnicalScores:
    """8-axis technical/market rubric."""

    scientific_validity: int | None = None
    manufacturing_feasibility: int | None = None
    performance_advantage: int | None = None
    gross_margin: int | None = None
    market_attractiveness: int | None = None
    regulatory_safety: int | None = None
    ip_protection: int | None = None
    strategic_fit: int | None = None


@dataclass
class CompetitiveScores:
    """7-axis business-entry rubric."""

    asset_transferability: int | None = None
    investment_recovery: int | None = None
    supply_chain_feasibility: int | None = None
    regulatory_compliance: int | None = None
    fto_ip_freedom: int | None = None
    channel_fit: int | None = None
    partner_availability: int | None = None


@dataclass
class TechnicalEvaluation:
    attractiveness: Attractiveness | None
    scores: TechnicalScores
    weighted_total: float | None
    summary: str | None = None
    urgency: str | None = None
    minimum_tech_level: str | None = None


@dataclass
class CompetitiveEvaluation:
    attractiveness: Attractiveness | None
    entry_probability: Level | None
    scores: CompetitiveScores
    weighted_total: float | None
    entry_method: str | None = None
    competitors: list[str] | None = None
    development_period: str | None = None
    development_cost: str | None = None
    barrier_height: Level | None = None


@dataclass
class ParseResult(Generic[T]):
    """
    Outcome of parsing one report.

    ``data`` always holds whatever was found; ``success`` is False when any
    required field is missing, with one message per missing field in ``errors``.
    """

    success: bool
    data: T | None
    errors: list[str] = field(default_factory=list)
    raw_text: str = ""

    def to_dict(self, include_raw: bool = False) -> dict[str, Any]:
        result: dict[str, Any] = {
            "success": self.success,
            "data": asdict(self.data) if self.data is not None else None,
            "errors": list(self.errors),
        }
        if include_raw:
            result["raw_text"] = self.raw_text
        return result


@dataclass
class WeightedTotalCheck:
    """Comparison between a report's claimed total and the recomputed one."""

    reported: float | None
    calculated: float | None

    @property
    def consistent(self) -> bool | None:
        """None when either side is unknown."""
        if self.reported is None or self.calculated is None:
            return None
        return abs(self.reported - self.calculated) < 0.05

    def to_dict(self) -> dict[str, Any]:
        return {
            "reported": self.reported,
            "calculated": self.calculated,
            "consistent": self.consistent,
        }
