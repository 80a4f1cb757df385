"""
Hypothesis structuring: turn raw research text into (title, summary) pairs.

Three tiers are tried in order:
1. AI extraction into ``{"hypotheses": [{"title", "summary"}]}``
2. Regex cascade over the raw text (first pattern with results wins)
3. A single hypothesis named after the run, carrying the start of the text

The first two tiers live here as pure functions; ``structure_hypotheses``
combines them with a generation call.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from .prompts import build_structuring_prompt

if TYPE_CHECKING:
    from ..agents.protocol import ResearchClient

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 100
SUMMARY_MAX_CHARS = 2000

# Numbered-list titles outside this length range are treated as noise.
_NUMBERED_TITLE_MIN = 5
_NUMBERED_TITLE_MAX = 200

BRACKET_HEADER_PATTERN = re.compile(r"【仮説(\d+)】\s*([^\n]+)(.*?)(?=【仮説\d+】|\Z)", re.DOTALL)
MARKDOWN_HEADER_PATTERN = re.compile(
    r"#{2,3}\s*仮説\s*(\d+)[：:]*\s*([^\n]+)(.*?)(?=#{2,3}\s*仮説|\Z)", re.DOTALL
)
NUMBERED_LIST_PATTERN = re.compile(
    r"(?:^|\n)(\d+)[.）)]\s*(?:\*\*)?([^\n*]+)(?:\*\*)?(.*?)(?=\n\d+[.）)]|\Z)", re.DOTALL
)
_JSON_DECODER = json.JSONDecoder()


@dataclass
class ParsedHypothesis:
    title: str
    summary: str

    def to_dict(self) -> dict[str, str]:
        return {"title": self.title, "summary": self.summary}


def _collect(
    pattern: re.Pattern[str],
    text: str,
    accept: Callable[[str], bool],
    summary_max: int,
) -> list[ParsedHypothesis]:
    results = []
    for match in pattern.finditer(text):
        title = match.group(2).strip()
        if title and accept(title):
            results.append(ParsedHypothesis(title=title, summary=match.group(3).strip()[:summary_max]))
    return results


def dedupe_by_title(hypotheses: list[ParsedHypothesis]) -> list[ParsedHypothesis]:
    """Drop case-insensitive duplicate titles, keeping the first occurrence."""
    seen: set[str] = set()
    unique = []
    for h in hypotheses:
        key = h.title.lower()
        if key in seen:
            continue
        seen.add(key)
        unique.append(h)
    return unique


def parse_hypotheses_from_output(output: str, summary_max: int = SUMMARY_MAX_CHARS) -> list[ParsedHypothesis]:
    """
    Extract hypotheses from free text with a cascade of header patterns.

    Tries ``【仮説N】`` blocks, then ``## 仮説N`` / ``### 仮説N`` headers, then
    ``1.`` / ``1)`` numbered lists, stopping at the first pattern that finds
    anything.

    Args:
        output: Raw research text
        summary_max: Maximum summary length

    Returns:
        Hypotheses in document order, deduplicated by title; empty if no
        pattern matched
    """
    results = _collect(BRACKET_HEADER_PATTERN, output, lambda _: True, summary_max)
    if not results:
        results = _collect(MARKDOWN_HEADER_PATTERN, output, lambda _: True, summary_max)
    if not results:
        results = _collect(
            NUMBERED_LIST_PATTERN,
            output,
            lambda title: _NUMBERED_TITLE_MIN < len(title) < _NUMBERED_TITLE_MAX,
            summary_max,
        )
    return dedupe_by_title(results)


def is_hypotheses_response(data: Any) -> bool:
    """True for ``{"hypotheses": [...]}`` where every entry has string title and summary."""
    if not isinstance(data, dict):
        return False
    items = data.get("hypotheses")
    if not isinstance(items, list):
        return False
    return all(
        isinstance(item, dict)
        and isinstance(item.get("title"), str)
        and isinstance(item.get("summary"), str)
        for item in items
    )


def extract_json_from_response(
    response: str,
    validator: Callable[[Any], bool] = is_hypotheses_response,
) -> dict[str, Any] | None:
    """
    Pull the ``hypotheses`` JSON object out of a model response.

    Decoding is attempted at every ``{`` in turn and the first object that
    passes ``validator`` wins, so fenced code blocks and prose containing
    braces around the JSON are both tolerated.

    Returns:
        Parsed object if one passes ``validator``, else None
    """
    start = response.find("{")
    while start != -1:
        try:
            parsed, _ = _JSON_DECODER.raw_decode(response, start)
        except json.JSONDecodeError:
            parsed = None
        if parsed is not None and validator(parsed):
            return parsed
        start = response.find("{", start + 1)
    return None


def validate_and_clean_hypotheses(
    items: list[dict[str, Any]],
    title_max: int = TITLE_MAX_CHARS,
    summary_max: int = SUMMARY_MAX_CHARS,
) -> list[ParsedHypothesis]:
    """Keep entries with a non-empty string title and string summary; trim and truncate both."""
    cleaned = []
    for item in items:
        title = item.get("title")
        summary = item.get("summary")
        if not isinstance(title, str) or not isinstance(summary, str):
            continue
        title = title.strip()
        if not title:
            continue
        cleaned.append(ParsedHypothesis(title=title[:title_max], summary=summary.strip()[:summary_max]))
    return cleaned


def build_hypothesis_context(
    display_title: str | None,
    uuid: str,
    summary: str | None,
    research_detail: str | None,
    target_spec_content: str,
    technical_assets_content: str,
) -> str:
    """Context block shared by every evaluation prompt for one hypothesis."""
    return f"""
=== 仮説情報 ===
タイトル: {display_title or ''}
UUID: {uuid}

=== 仮説概要 ===
{summary or ''}

=== 詳細調査レポート ===
{research_detail or ''}

=== 市場・顧客ニーズ ===
{target_spec_content}

=== 技術資産 ===
{technical_assets_content}
"""


async def structure_hypotheses(
    ai: "ResearchClient",
    research_output: str,
    hypothesis_count: int,
    fallback_title: str,
    title_max: int = TITLE_MAX_CHARS,
    summary_max: int = SUMMARY_MAX_CHARS,
    input_chars: int = 50_000,
) -> tuple[list[ParsedHypothesis], str]:
    """
    Structure raw research output into hypotheses. Always returns at least one.

    Args:
        ai: Client used for the extraction call
        research_output: Raw text from run-level research
        hypothesis_count: How many hypotheses to ask the model for
        fallback_title: Title for the single synthesized hypothesis
        title_max: Maximum title length
        summary_max: Maximum summary length
        input_chars: How much of the raw text is sent to the model

    Returns:
        (hypotheses, tier) where tier is "ai", "regex" or "fallback"
    """
    hypotheses: list[ParsedHypothesis] = []

    prompt = build_structuring_prompt(research_output[:input_chars], hypothesis_count)
    try:
        response = await ai.generate_content(prompt)
        parsed = extract_json_from_response(response)
        if parsed:
            hypotheses = validate_and_clean_hypotheses(parsed["hypotheses"], title_max, summary_max)
    except Exception as e:
        logger.warning(f"AI structuring failed, falling back to pattern extraction: {e}")

    if hypotheses:
        return hypotheses, "ai"

    hypotheses = [
        ParsedHypothesis(title=h.title[:title_max], summary=h.summary)
        for h in parse_hypotheses_from_output(research_output, summary_max)
    ]
    if hypotheses:
        return hypotheses, "regex"

    title = fallback_title.strip() or "Generated hypothesis"
    return [ParsedHypothesis(title=title[:title_max], summary=research_output[:summary_max])], "fallback"
