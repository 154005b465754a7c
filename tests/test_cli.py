"""Tests for the click command line interface."""

import json

import pytest
from click.testing import CliRunner

from cursor_history.cli import main


@pytest.fixture
def run(cursor_data, monkeypatch):
    """Invoke the CLI against the synthetic data root."""
    monkeypatch.delenv("DEBUG", raising=False)
    monkeypatch.delenv("CURSOR_HISTORY_DEBUG", raising=False)
    runner = CliRunner()

    def invoke(*args, data_path=None):
        return runner.invoke(main, ["--data-path", str(data_path or cursor_data), *args])

    return invoke


class TestBrowsing:
    def test_list(self, run):
        result = run("list")
        assert result.exit_code == 0, result.output
        assert "Add dark mode" in result.output
        assert "Python basics" in result.output
        assert result.output.index("Add dark mode") < result.output.index("Fix auth bug")

    def test_list_limit(self, run):
        result = run("list", "-n", "1")
        assert "Add dark mode" in result.output
        assert "Fix auth bug" not in result.output

    def test_list_json(self, run):
        result = run("--json", "list", "-w", "abc123hash")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["count"] == 2
        assert [(s["index"], s["id"]) for s in data["sessions"]] == [(1, "comp-uuid-002"), (3, "comp-uuid-001")]

    def test_list_missing_data(self, run, tmp_path):
        result = run("list", data_path=tmp_path / "nothing")
        assert result.exit_code == 3
        assert "Error:" in result.output

    def test_list_corrupt_global_store(self, run, cursor_data):
        (cursor_data / "globalStorage" / "state.vscdb").write_bytes(b"garbage" * 200)
        result = run("list")
        assert result.exit_code == 1
        assert "Error: Cannot read database" in result.output
        assert result.exception is None or isinstance(result.exception, SystemExit)

    def test_workspaces(self, run):
        result = run("workspaces")
        assert result.exit_code == 0
        assert "/Users/testuser/dev/my-project" in result.output
        assert "empty789" not in result.output

    def test_workspaces_json(self, run):
        data = json.loads(run("--json", "workspaces").output)
        assert [w["sessionCount"] for w in data["workspaces"]] == [2, 1]

    def test_show(self, run):
        result = run("show", "3")
        assert result.exit_code == 0
        assert result.output.startswith("# Fix auth bug")
        assert "Now add error handling for expired tokens" in result.output

    def test_show_json_filtered(self, run):
        result = run("--json", "show", "comp-uuid-001", "--only", "tool")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["filter"] == ["tool"]
        assert [m["id"] for m in data["messages"]] == ["b2"]

    def test_show_not_found(self, run):
        result = run("show", "99")
        assert result.exit_code == 3
        assert "Valid range: 1-4" in result.output

    def test_show_bad_type(self, run):
        assert run("show", "1", "--only", "bogus").exit_code == 2

    def test_search(self, run):
        result = run("search", "python")
        assert result.exit_code == 0
        assert "#4 Python basics" in result.output

    def test_search_json(self, run):
        data = json.loads(run("--json", "search", "DARK MODE").output)
        assert data["query"] == "DARK MODE"
        assert data["totalMatches"] == 2

    def test_search_no_matches(self, run):
        result = run("search", "zzzz-nothing")
        assert result.exit_code == 0
        assert 'No matches for "zzzz-nothing".' in result.output

    def test_search_blank_query(self, run):
        assert run("search", "   ").exit_code == 2


class TestExport:
    def test_export_range_to_directory(self, run, tmp_path):
        out = tmp_path / "exports"
        result = run("export", "1-2", "-o", str(out))
        assert result.exit_code == 0, result.output
        assert sorted(p.name for p in out.iterdir()) == ["1-Add dark mode.md", "2-Explain the search index.md"]
        assert (out / "1-Add dark mode.md").read_text(encoding="utf-8").startswith("# Add dark mode")

    def test_existing_file_needs_force(self, run, tmp_path):
        out = tmp_path / "exports"
        assert run("export", "4", "-o", str(out), "--format", "json").exit_code == 0
        path = out / "4-Python basics.json"
        path.write_text("stale", encoding="utf-8")

        refused = run("export", "4", "-o", str(out), "--format", "json")
        assert refused.exit_code == 4
        assert path.read_text(encoding="utf-8") == "stale"

        forced = run("export", "4", "-o", str(out), "--format", "json", "-f")
        assert forced.exit_code == 0
        assert json.loads(path.read_text(encoding="utf-8"))["id"] == "comp-uuid-004"

    def test_export_stdout(self, run):
        result = run("export", "comp-uuid-004", "--stdout", "--format", "json")
        assert result.exit_code == 0
        assert json.loads(result.output)["title"] == "Python basics"

    def test_export_json_summary(self, run, tmp_path):
        result = run("--json", "export", "1,3", "-o", str(tmp_path))
        data = json.loads(result.output)
        assert [f["index"] for f in data["files"]] == [1, 3]


class TestRename:
    def test_rename(self, run):
        result = run("rename", "3", "Auth fix v2")
        assert result.exit_code == 0
        assert "comp-uuid-001" in result.output
        listing = json.loads(run("--json", "list").output)
        titles = {s["id"]: s["title"] for s in listing["sessions"]}
        assert titles["comp-uuid-001"] == "Auth fix v2"

    def test_rename_global_only(self, run):
        assert run("rename", "4", "Nope").exit_code == 2


class TestBackupCommands:
    def test_backup_validate_restore(self, run, tmp_path):
        archive = tmp_path / "b.zip"
        created = run("--json", "backup", "-o", str(archive))
        assert created.exit_code == 0, created.output
        assert json.loads(created.output)["manifest"]["stats"]["sessionCount"] == 4

        validated = run("validate", str(archive))
        assert validated.exit_code == 0
        assert "Status: valid" in validated.output

        target = tmp_path / "restored"
        restored = run("restore", str(archive), "-t", str(target))
        assert restored.exit_code == 0
        assert "Restored 7 file(s)" in restored.output
        assert (target / "globalStorage" / "state.vscdb").exists()

    def test_backup_exists(self, run, tmp_path):
        archive = tmp_path / "b.zip"
        archive.write_bytes(b"old")
        result = run("backup", "-o", str(archive))
        assert result.exit_code == 4
        assert "Backup failed" in result.output

    def test_validate_invalid(self, run, tmp_path):
        bogus = tmp_path / "bogus.zip"
        bogus.write_bytes(b"nope")
        result = run("validate", str(bogus))
        assert result.exit_code == 1
        assert "Status: invalid" in result.output

    def test_restore_missing_backup(self, run, tmp_path):
        result = run("restore", str(tmp_path / "missing.zip"), "-t", str(tmp_path / "t"))
        assert result.exit_code == 3

    def test_backups_listing(self, run, tmp_path):
        directory = tmp_path / "backups"
        assert run("backup", "-o", str(directory / "one.zip")).exit_code == 0
        result = run("backups", "--dir", str(directory))
        assert result.exit_code == 0
        assert "one.zip" in result.output
        assert "4 sessions" in result.output
        assert "No backups found." in run("backups", "--dir", str(tmp_path / "none")).output
