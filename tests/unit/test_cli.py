"""Test the operator CLI."""

import json

import pytest
from typer.testing import CliRunner

from dbvault.cli import app

runner = CliRunner()


@pytest.fixture
def cli_env(monkeypatch, source_db, backup_dir):
    monkeypatch.setenv("DATABASE_PATH", str(source_db))
    monkeypatch.setenv("BACKUP_DIRECTORY", str(backup_dir))
    monkeypatch.setenv("BACKUP_PROCESS_LOCK", "false")


def _list() -> list[dict]:
    result = runner.invoke(app, ["list", "--json"])
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


class TestCLI:
    def test_generate_key(self):
        result = runner.invoke(app, ["generate-key"])

        assert result.exit_code == 0
        assert len(result.stdout.strip()) >= 16

    def test_invalid_configuration_exits_with_usage_error(self, monkeypatch):
        monkeypatch.setenv("BACKUP_ENCRYPTION_KEY", "short")

        result = runner.invoke(app, ["list"])

        assert result.exit_code == 2
        assert "BACKUP_ENCRYPTION_KEY" in result.stdout

    def test_empty_list(self, cli_env):
        result = runner.invoke(app, ["list"])

        assert result.exit_code == 0
        assert "No backups recorded" in result.stdout

    def test_malformed_ledger_entry_is_reported(self, cli_env, backup_dir):
        backup_dir.mkdir(parents=True, exist_ok=True)
        (backup_dir / "backup-metadata.json").write_text(json.dumps([{"filename": "x"}]))

        result = runner.invoke(app, ["list"])

        assert result.exit_code == 1
        assert "StorageError" in result.stdout

    def test_backup_verify_restore_delete(self, cli_env, tmp_path, read_users):
        result = runner.invoke(app, ["backup"])
        assert result.exit_code == 0, result.output
        assert "completed successfully" in result.stdout

        entries = _list()
        assert len(entries) == 1
        filename = entries[0]["filename"]

        result = runner.invoke(app, ["verify", filename])
        assert result.exit_code == 0, result.output

        target = tmp_path / "restored.db"
        result = runner.invoke(app, ["restore", filename, "--target", str(target), "--yes"])
        assert result.exit_code == 0, result.output
        assert read_users(target) == ["alice", "bob", "carol"]

        result = runner.invoke(app, ["delete", filename, "--yes"])
        assert result.exit_code == 0, result.output
        assert _list() == []

    def test_verify_unknown_backup(self, cli_env):
        result = runner.invoke(app, ["verify", "database-backup-nope.backup.enc"])

        assert result.exit_code == 1
        assert "NotFoundError" in result.stdout

    def test_restore_requires_confirmation(self, cli_env, source_db):
        runner.invoke(app, ["backup"])
        filename = _list()[0]["filename"]
        before = source_db.read_bytes()

        result = runner.invoke(app, ["restore", filename], input="n\n")

        assert result.exit_code == 1
        assert source_db.read_bytes() == before

    def test_cleanup_and_reconcile(self, cli_env, seed_record, store):
        expired = seed_record(45)
        dangling = seed_record(1, with_file=False)

        result = runner.invoke(app, ["cleanup"])
        assert result.exit_code == 0, result.output
        assert "Removed 1 backups" in result.stdout
        assert not store.artifact_path(expired.filename).exists()

        result = runner.invoke(app, ["reconcile"])
        assert result.exit_code == 1
        assert [e["filename"] for e in _list()] == [dangling.filename]
