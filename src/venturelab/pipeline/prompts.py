"""
Prompt builders for each pipeline stage.

Evaluation prompts spell out the exact output labels that the report parsers
in ``venturelab.parsers`` look for; keep the two in sync.
"""

from ..parsers import COMPETITIVE_AXES, TECHNICAL_AXES
from .models import ExistingHypothesis

RUN_RESEARCH_PROMPT = "task_instructionsの指示に従い、事業仮説を生成してください。"
HYPOTHESIS_RESEARCH_PROMPT = (
    "hypothesis_contextの仮説について、task_instructionsの指示に従って詳細な調査レポートを作成してください。"
)

HYPOTHESIS_RESEARCH_INSTRUCTIONS = """この仮説について詳細な調査を行い、以下の観点から深掘りしたレポートを作成してください：

1. 市場機会の詳細分析
2. 技術的実現可能性
3. ビジネスモデル詳細
4. 競合優位性の深掘り

調査結果は具体的なデータや事例を含めて記述してください。"""


def build_research_instructions(
    hypothesis_count: int,
    existing: list[ExistingHypothesis] | None = None,
) -> str:
    """
    Task document for run-level research.

    Args:
        hypothesis_count: Number of hypotheses to generate
        existing: Previously generated hypotheses to steer away from

    Returns:
        Instruction text uploaded alongside the input documents
    """
    lines = [
        "【タスク】",
        "添付された「technical_assets」の技術資産を分析し、「target_specification」で指定された市場において、"
        f"{hypothesis_count}件の新しい事業仮説を生成してください。",
        "",
        "【出力形式】",
        "各仮説は「【仮説N】タイトル」で始め、続けて概要を記述してください。",
    ]
    if existing:
        lines += ["", "【除外すべき既存仮説】", "以下と類似または重複する仮説は生成しないでください："]
        lines += [f"{i}. {h.title}: {h.summary[:100]}..." for i, h in enumerate(existing, 1)]
    return "\n".join(lines)


def build_structuring_prompt(research_output: str, hypothesis_count: int) -> str:
    return f"""以下の調査レポートから、最も有望な事業仮説を{hypothesis_count}件抽出し、JSON形式で出力してください。

=== 調査レポート ===
{research_output}

=== 出力形式 ===
JSONのみを出力してください。
{{"hypotheses": [{{"title": "仮説のタイトル", "summary": "仮説の概要"}}]}}"""


def build_hypothesis_research_context(
    display_title: str,
    uuid: str,
    hypothesis_number: int,
    summary: str,
) -> str:
    return f"""
=== 仮説情報 ===
タイトル: {display_title}
UUID: {uuid}
仮説番号: {hypothesis_number}

=== 仮説概要 ===
{summary}
"""


def _score_format(axes) -> str:
    return "\n".join(f"{axis.label}（{axis.weight}％）：［1-5］" for axis in axes)


def build_technical_prompt(context: str) -> str:
    """8-axis technical evaluation request."""
    return f"""以下の仮説を技術・市場の観点で評価してください。

=== 出力形式 ===
当該テーマの魅力度：高／中（戦略要修正）／低
当該テーマについての総評：
顧客にとっての切迫度（課題の深刻さ）：ぜひ欲しい／あると良い／無くても困らない
最低限達成すべき技術水準：
{_score_format(TECHNICAL_AXES)}
{len(TECHNICAL_AXES)}項目の加重合計（100点満点）：

{context}"""


def build_competitive_prompt(context: str, technical_evaluation: str) -> str:
    """7-axis competitive evaluation request; sees the technical evaluation."""
    return f"""以下の仮説を事業参入の観点で評価してください。

=== 出力形式 ===
事業価値×参入確率に基づく魅力度：高／中（戦略要修正）／低
参入確率：高／中／低
参入方式：自社開発（内製）／共同推進（パートナー連携）／外部調達（買収・ライセンス・OEM）
想定競合：
開発期間：
開発コスト：
業界の参入障壁高さ：高／中／低
{_score_format(COMPETITIVE_AXES)}
{len(COMPETITIVE_AXES)}項目の加重合計（100点満点）：

{context}

=== 技術評価結果 ===
{technical_evaluation}"""


def build_integration_prompt(context: str, technical_evaluation: str, competitive_evaluation: str) -> str:
    """Integration report request combining both evaluations."""
    return f"""以下の評価結果を統合し、仮説の総合レポートを作成してください。

{context}

=== 技術評価 ===
{technical_evaluation}

=== 競合分析 ===
{competitive_evaluation}"""
