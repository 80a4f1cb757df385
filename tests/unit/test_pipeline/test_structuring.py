"""
Tests for hypothesis structuring.

These tests verify:
- AI extraction with JSON validation
- Pattern fallback cascade
- Single synthesized hypothesis when nothing matches
"""

import pytest

from venturelab.pipeline.structuring import (
    ParsedHypothesis,
    dedupe_by_title,
    extract_json_from_response,
    parse_hypotheses_from_output,
    structure_hypotheses,
    validate_and_clean_hypotheses,
)

BRACKET_OUTPUT = """\
調査結果の概要です。

【仮説1】高耐熱コーティング
航空機エンジン部品向けの遮熱膜。

【仮説2】透明導電フィルム
フレキシブルディスプレイ向け。

【仮説3】低誘電基板
6G通信向けの基板材料。
"""


class FakeAI:
    """Content generator returning a canned response."""

    def __init__(self, response: str | None = None, error: Exception | None = None):
        self.response = response
        self.error = error
        self.prompts: list[str] = []

    async def generate_content(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error:
            raise self.error
        return self.response or ""


def test_bracket_headers():
    hypotheses = parse_hypotheses_from_output(BRACKET_OUTPUT)

    assert [h.title for h in hypotheses] == ["高耐熱コーティング", "透明導電フィルム", "低誘電基板"]
    assert hypotheses[0].summary == "航空機エンジン部品向けの遮熱膜。"
    assert hypotheses[2].summary == "6G通信向けの基板材料。"


def test_markdown_headers():
    output = "## 仮説1: 再生炭素繊維\n自動車内装向け。\n### 仮説2：バイオ樹脂\n包装材向け。"

    hypotheses = parse_hypotheses_from_output(output)

    assert [h.title for h in hypotheses] == ["再生炭素繊維", "バイオ樹脂"]
    assert hypotheses[1].summary == "包装材向け。"


def test_numbered_list_filters_short_titles():
    output = "1. **Recycled carbon fibre panels**\nFor car interiors.\n2. Tiny\n3) Bio-based packaging resin\nFor food."

    hypotheses = parse_hypotheses_from_output(output)

    assert [h.title for h in hypotheses] == ["Recycled carbon fibre panels", "Bio-based packaging resin"]


def test_no_pattern_returns_empty():
    assert parse_hypotheses_from_output("Nothing structured here at all.") == []


def test_summary_is_truncated():
    output = "【仮説1】長い概要\n" + "あ" * 50

    hypotheses = parse_hypotheses_from_output(output, summary_max=10)

    assert len(hypotheses[0].summary) == 10


def test_dedupe_is_case_insensitive():
    hypotheses = [
        ParsedHypothesis("Solar Glass", "first"),
        ParsedHypothesis("solar glass", "second"),
        ParsedHypothesis("Wind Blades", "third"),
    ]

    assert [h.summary for h in dedupe_by_title(hypotheses)] == ["first", "third"]


def test_extract_json_from_fenced_block():
    response = '```json\n{"hypotheses": [{"title": "A", "summary": "B"}]}\n```'

    assert extract_json_from_response(response) == {"hypotheses": [{"title": "A", "summary": "B"}]}


def test_extract_json_surrounded_by_braces_in_prose():
    response = (
        "Extracted from the {draft} report:\n"
        '{"hypotheses": [{"title": "A", "summary": "B"}]}\n'
        "Set notation {x | x > 0} was left out."
    )

    assert extract_json_from_response(response) == {"hypotheses": [{"title": "A", "summary": "B"}]}


def test_extract_json_skips_objects_of_other_shapes():
    response = '{"note": "draft"} then {"hypotheses": [{"title": "A", "summary": "B"}]}'

    assert extract_json_from_response(response)["hypotheses"][0]["title"] == "A"


def test_extract_json_rejects_invalid_shape():
    assert extract_json_from_response('{"hypotheses": [{"title": 1, "summary": "B"}]}') is None
    assert extract_json_from_response('{"hypotheses": [ broken') is None
    assert extract_json_from_response("no json") is None


def test_validate_and_clean():
    items = [
        {"title": "  Solar glass  ", "summary": " Coatings for panels "},
        {"title": "   ", "summary": "blank title"},
        {"title": "x" * 150, "summary": "long"},
        {"title": "No summary"},
    ]

    cleaned = validate_and_clean_hypotheses(items, title_max=100)

    assert cleaned[0] == ParsedHypothesis("Solar glass", "Coatings for panels")
    assert len(cleaned) == 2
    assert len(cleaned[1].title) == 100


@pytest.mark.asyncio
async def test_structure_uses_ai_response():
    ai = FakeAI('{"hypotheses": [{"title": "A", "summary": "a"}, {"title": "B", "summary": "b"}]}')

    hypotheses, tier = await structure_hypotheses(ai, BRACKET_OUTPUT, 2, "Job")

    assert tier == "ai"
    assert [h.title for h in hypotheses] == ["A", "B"]
    assert "低誘電基板" in ai.prompts[0]


@pytest.mark.asyncio
async def test_structure_falls_back_to_patterns_on_ai_error():
    ai = FakeAI(error=RuntimeError("quota"))

    hypotheses, tier = await structure_hypotheses(ai, BRACKET_OUTPUT, 3, "Job")

    assert tier == "regex"
    assert len(hypotheses) == 3


@pytest.mark.asyncio
async def test_structure_falls_back_to_patterns_on_unusable_json():
    ai = FakeAI('{"hypotheses": []}')

    hypotheses, tier = await structure_hypotheses(ai, BRACKET_OUTPUT, 3, "Job")

    assert tier == "regex"


@pytest.mark.asyncio
async def test_structure_synthesizes_single_hypothesis():
    ai = FakeAI("I could not find anything.")
    output = "Unstructured prose about the market."

    hypotheses, tier = await structure_hypotheses(ai, output, 3, "Coatings 2026")

    assert tier == "fallback"
    assert hypotheses == [ParsedHypothesis("Coatings 2026", output)]


@pytest.mark.asyncio
async def test_fallback_title_when_job_name_empty():
    hypotheses, tier = await structure_hypotheses(FakeAI(""), "prose", 3, "")

    assert tier == "fallback"
    assert hypotheses[0].title == "Generated hypothesis"
