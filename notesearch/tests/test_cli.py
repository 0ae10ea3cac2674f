"""Tests for the ns command line."""

import json

from click.testing import CliRunner

from notesearch.cli.ns import cli


def test_analyze():
    runner = CliRunner()
    result = runner.invoke(cli, ["analyze", "tag:bug tag:urgent authentication error fix now"])

    assert result.exit_code == 0
    assert "hybrid" in result.output
    assert "authentication error fix now" in result.output
    assert '"bug"' in result.output


def test_keyword_search_json(vault):
    runner = CliRunner()
    result = runner.invoke(cli, ["--notes", str(vault), "search", "database", "--json"])

    assert result.exit_code == 0
    payload = json.loads(result.stdout[result.stdout.index("["):])
    assert payload[0]["file_name"] == "database-migration.md"
    assert payload[0]["match_type"] == "keyword"


def test_keyword_search_table(vault):
    runner = CliRunner()
    result = runner.invoke(cli, ["--notes", str(vault), "search", "database", "--limit", "1"])

    assert result.exit_code == 0
    assert "Search Results (1)" in result.output


def test_missing_config(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    runner = CliRunner()
    result = runner.invoke(cli, ["search", "database"])

    assert result.exit_code == 2
    assert "Configuration error" in result.output


def test_explain_without_model(vault, tmp_path):
    config_file = tmp_path / "notesearch.yaml"
    config_file.write_text(
        f"notes_path: {vault}\nsearch:\n  enable_semantic: false\n"
    )
    runner = CliRunner()
    result = runner.invoke(
        cli, ["--config", str(config_file), "explain", "database", str(vault / "ideas.txt")]
    )

    assert result.exit_code == 0
    assert "LLM not available" in result.output
