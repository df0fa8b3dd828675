"""Tests for the click command-line interface."""

from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from cli import main
from ideagraph.config import DB_PATH_ENV
from ideagraph.knowledge_base.persistence import PersistenceAdapter
from ideagraph.knowledge_base.store import EntityStore


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "cli.sqlite"
    monkeypatch.setenv(DB_PATH_ENV, str(path))
    return path


@pytest.fixture
def runner():
    return CliRunner()


def _invoke(runner, *args, **kwargs):
    return runner.invoke(main, ["--config", "does-not-exist.yaml", *args], **kwargs)


def _open(db_path) -> EntityStore:
    store = EntityStore(PersistenceAdapter(db_path))
    store.init()
    return store


class TestCli:
    def test_migrate_fresh_store(self, runner, db_path):
        result = _invoke(runner, "migrate")
        assert result.exit_code == 0, result.output
        assert "Schema is up to date" in result.output
        assert PersistenceAdapter(db_path).stored_version() == 4

    def test_thesis_create_and_list(self, runner, db_path):
        result = _invoke(runner, "thesis", "create", "Does shade reduce heat?", "--activate")
        assert result.exit_code == 0, result.output
        store = _open(db_path)
        assert [t.title for t in store.list_theses()] == ["Does shade reduce heat?"]
        assert store.active_thesis_id == store.list_theses()[0].id

        listed = _invoke(runner, "thesis", "list")
        assert listed.exit_code == 0
        assert "Does shade reduce heat?" in listed.output

    def test_paper_commands_use_active_thesis(self, runner, db_path):
        _invoke(runner, "thesis", "create", "Q", "--activate")
        result = _invoke(runner, "paper", "add", "Street trees", "--year", "2021", "--author", "Ada Lovelace")
        assert result.exit_code == 0, result.output

        store = _open(db_path)
        paper = store.list_papers()[0]
        assert paper.authors[0].name == "Ada Lovelace"

        assert _invoke(runner, "paper", "screen", paper.id, "--decision", "include").exit_code == 0
        assert _invoke(runner, "paper", "status", paper.id, "read").exit_code == 0
        store = _open(db_path)
        assert store.get_paper(paper.id).screening_decision.value == "include"
        assert store.get_reading_progress(paper.thesis_id) == 1.0

        stats = _invoke(runner, "stats")
        assert stats.exit_code == 0
        assert "100%" in stats.output

    def test_paper_add_without_thesis_fails(self, runner, db_path):
        result = _invoke(runner, "paper", "add", "Orphan")
        assert result.exit_code != 0
        assert _open(db_path).list_papers() == []

    def test_connect_and_delete(self, runner, db_path):
        _invoke(runner, "thesis", "create", "Q", "--activate")
        _invoke(runner, "paper", "add", "A")
        _invoke(runner, "paper", "add", "B")
        a, b = _open(db_path).list_papers()
        result = _invoke(runner, "connect", a.id, b.id, "--type", "extends")
        assert result.exit_code == 0, result.output
        assert len(_open(db_path).list_connections()) == 1

        assert _invoke(runner, "paper", "delete", a.id).exit_code == 0
        store = _open(db_path)
        assert store.list_connections() == []
        assert store.integrity_report() == []

    def test_unknown_paper_reports_error(self, runner, db_path):
        result = _invoke(runner, "paper", "status", "missing", "read")
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_thesis_delete_cascades(self, runner, db_path):
        _invoke(runner, "thesis", "create", "Q", "--activate")
        _invoke(runner, "paper", "add", "A")
        thesis_id = _open(db_path).list_theses()[0].id
        result = _invoke(runner, "thesis", "delete", thesis_id, "--yes")
        assert result.exit_code == 0, result.output
        store = _open(db_path)
        assert store.list_theses() == []
        assert store.list_papers() == []

    def test_export_import(self, runner, db_path, tmp_path):
        _invoke(runner, "thesis", "create", "Q")
        out = tmp_path / "export.json"
        assert _invoke(runner, "export", "-o", str(out)).exit_code == 0
        assert json.loads(out.read_text())["theses"][0]["title"] == "Q"

        _invoke(runner, "thesis", "create", "Second")
        result = _invoke(runner, "import", str(out), "--yes")
        assert result.exit_code == 0, result.output
        assert [t.title for t in _open(db_path).list_theses()] == ["Q"]

    def test_check_clean_store(self, runner, db_path):
        result = _invoke(runner, "check")
        assert result.exit_code == 0
        assert "No integrity problems" in result.output

    def test_usage_json(self, runner, db_path):
        _invoke(runner, "thesis", "create", "Q")
        result = _invoke(runner, "usage", "--json")
        assert result.exit_code == 0, result.output
        report = json.loads(result.output)
        assert report["counts"]["theses"] == 1
        assert report["level"] == "info"

    def test_gaps_save(self, runner, db_path):
        _invoke(runner, "thesis", "create", "Q", "--activate")
        for title in ("A", "B"):
            _invoke(runner, "paper", "add", title)
        a, b = _open(db_path).list_papers()
        _invoke(runner, "paper", "screen", a.id, b.id, "--decision", "include")
        _invoke(runner, "connect", a.id, b.id, "--type", "contradicts")

        result = _invoke(runner, "gaps", "--save")
        assert result.exit_code == 0, result.output
        gaps = _open(db_path).list_gaps()
        assert [g.type.value for g in gaps] == ["contradictory"]

    def test_paper_attach_local_pdf(self, runner, db_path, tmp_path):
        config = tmp_path / "ideagraph.yaml"
        config.write_text(f"storage:\n  pdf_dir: {tmp_path / 'pdfs'}\n")
        pdf = tmp_path / "study.pdf"
        pdf.write_bytes(b"%PDF-1.4\n")
        runner.invoke(main, ["--config", str(config), "thesis", "create", "Q", "--activate"])
        runner.invoke(main, ["--config", str(config), "paper", "add", "A"])
        paper_id = _open(db_path).list_papers()[0].id

        result = runner.invoke(main, ["--config", str(config), "paper", "attach", paper_id, str(pdf)])
        assert result.exit_code == 0, result.output
        assert (tmp_path / "pdfs" / f"{paper_id}.pdf").read_bytes() == b"%PDF-1.4\n"

    def test_paper_attach_rejects_non_pdf(self, runner, db_path, tmp_path):
        config = tmp_path / "ideagraph.yaml"
        config.write_text(f"storage:\n  pdf_dir: {tmp_path / 'pdfs'}\n")
        notes = tmp_path / "notes.txt"
        notes.write_text("plain text")
        runner.invoke(main, ["--config", str(config), "thesis", "create", "Q", "--activate"])
        runner.invoke(main, ["--config", str(config), "paper", "add", "A"])
        paper_id = _open(db_path).list_papers()[0].id

        result = runner.invoke(main, ["--config", str(config), "paper", "attach", paper_id, str(notes)])
        assert result.exit_code == 1
        assert "not a PDF" in result.output
