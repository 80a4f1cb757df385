"""Tests for the command-line interface."""

from pathlib import Path

from typer.testing import CliRunner

from venturelab.cli import app

runner = CliRunner()

REPORT = """\
当該テーマの魅力度：中（戦略要修正）
科学的妥当性（20％）：4
製造実現性（15％）：3
性能優位（20％）：5
粗利率（20％）：4
市場魅力度（10％）：4
規制・安全環境（5％）：4
知財防衛（5％）：3
戦略適合（5％）：4
8項目の加重合計（100点満点）：78.0
"""


def test_score_flags_total_mismatch(tmp_path: Path):
    report = tmp_path / "technical.txt"
    report.write_text(REPORT, encoding="utf-8")

    result = runner.invoke(app, ["score", str(report)])

    assert result.exit_code == 0
    assert "Calculated total: 80.0" in result.output
    assert "does not match" in result.output


def test_score_fails_on_incomplete_report(tmp_path: Path):
    report = tmp_path / "competitive.txt"
    report.write_text("参入確率：高\n", encoding="utf-8")

    result = runner.invoke(app, ["score", str(report), "--kind", "competitive"])

    assert result.exit_code == 1


def test_score_rejects_unknown_kind(tmp_path: Path):
    report = tmp_path / "x.txt"
    report.write_text(REPORT, encoding="utf-8")

    result = runner.invoke(app, ["score", str(report), "--kind", "financial"])

    assert result.exit_code == 1


def test_init_writes_config_and_database(tmp_path: Path):
    result = runner.invoke(app, ["init", "--path", str(tmp_path)])

    assert result.exit_code == 0, result.output
    assert (tmp_path / "venturelab.toml").exists()
    assert (tmp_path / ".venturelab" / "pipeline.db").exists()

    again = runner.invoke(app, ["init", "--path", str(tmp_path)])
    assert again.exit_code == 1
