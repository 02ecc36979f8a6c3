"""Tests for the command-line entry point."""
import json

import pytest

from notevault.config import config
from notevault.main import main, parse_args
from notevault.storage.repository_index import RepositoryIndex


@pytest.fixture
def cli_root(test_config, monkeypatch, clean_logger):
    """A populated repository root; main() rewrites the global config."""
    monkeypatch.setattr(config, "log_level", config.log_level)
    root = test_config.root_dir
    index = RepositoryIndex(root_dir=root)
    try:
        work = index.create_folder("Work")
        plan = index.create_note(work, "Plan")
        index.save_note(plan, "see [[Budget]]")
        budget = index.create_note(work, "Budget")
        index.save_note(budget, "numbers")
        index.toggle_favorite(budget)
    finally:
        index.close()
    return root


def run(root, *argv):
    return main(["--root", str(root), *argv])


def test_parse_args_requires_command():
    with pytest.raises(SystemExit):
        parse_args([])


def test_folders(cli_root, capsys):
    assert run(cli_root, "folders") == 0
    assert capsys.readouterr().out == "0\tWork\t2 notes\n"


def test_notes_shows_flags(cli_root, capsys):
    assert run(cli_root, "notes", "Work") == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines == ["0:0\tPlan", "0:1\tBudget [favorite]"]


def test_unknown_folder_is_an_error(cli_root, capsys):
    assert run(cli_root, "notes", "Nope") == 1
    captured = capsys.readouterr()
    assert captured.out == ""
    assert captured.err.startswith("error: [FOLDER_NOT_FOUND]")


def test_search(cli_root, capsys):
    assert run(cli_root, "search", "bdg") == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines[0].endswith("\tWork/Budget")
    assert lines[1].endswith("\tWork/Plan")


def test_backlinks(cli_root, capsys):
    assert run(cli_root, "backlinks", "Work", "Budget") == 0
    assert capsys.readouterr().out == "<- Plan (0:0)\n"


def test_versions(cli_root, capsys):
    assert run(cli_root, "versions", "Work", "Plan") == 0
    lines = capsys.readouterr().out.splitlines()
    assert len(lines) == 1
    assert lines[0].startswith("1\t")
    assert lines[0].endswith("14 bytes\tUpdated: Plan")


def test_stats(cli_root, capsys):
    assert run(cli_root, "stats") == 0
    stats = json.loads(capsys.readouterr().out)
    assert stats["total_notes"] == 2
    assert stats["favorite_count"] == 1


def test_export(cli_root, temp_dir, capsys):
    destination = temp_dir / "snapshot"
    assert run(cli_root, "export", str(destination)) == 0
    assert capsys.readouterr().out.strip() == str(destination)
    assert (destination / "Work" / "Budget.md").read_text(encoding="utf-8") == "numbers"
