"""Tests for the Typer CLI against a DuckDB file."""

import pytest
from typer.testing import CliRunner

from clinsync.cli import app

runner = CliRunner()


@pytest.fixture
def cli_env(monkeypatch, tmp_path):
    for name in ("CS_REDCAP_URL", "CS_REDCAP_TOKEN", "CS_CACHE_PATH", "CS_SEED_DEFAULT_USERS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CS_DB_TYPE", "duckdb")
    monkeypatch.setenv("CS_DB_PATH", str(tmp_path / "clinsync.duckdb"))
    return tmp_path


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert "Clinical-Sync v" in result.stdout


def test_init_db_seeds_default_users(cli_env):
    result = runner.invoke(app, ["init-db"])

    assert result.exit_code == 0, result.stdout
    assert "Users: 2" in result.stdout
    assert (cli_env / "clinsync.duckdb").exists()


def test_create_user_persists(cli_env):
    result = runner.invoke(app, ["create-user", "nurse@clinic.com", "--password", "nurse-pass"])
    assert result.exit_code == 0, result.stdout
    assert "nurse@clinic.com" in result.stdout

    duplicate = runner.invoke(app, ["create-user", "nurse@clinic.com", "--password", "nurse-pass"])
    assert duplicate.exit_code == 1


def test_create_user_rejects_short_password(cli_env):
    result = runner.invoke(app, ["create-user", "nurse@clinic.com", "--password", "123"])
    assert result.exit_code == 1
    assert "password" in result.stdout


def test_sync_with_nothing_pending(cli_env):
    result = runner.invoke(app, ["sync"])
    assert result.exit_code == 0, result.stdout


def test_list_records_empty(cli_env):
    result = runner.invoke(app, ["list-records"])
    assert result.exit_code == 0
    assert "No records found" in result.stdout


def test_audit_shows_seeded_users(cli_env):
    runner.invoke(app, ["init-db"])

    result = runner.invoke(app, ["audit", "--action", "CREATE_USER"])

    assert result.exit_code == 0, result.stdout
    assert "No audit entries found" not in result.stdout


def test_reconcile_clean_store(cli_env):
    result = runner.invoke(app, ["reconcile"])
    assert result.exit_code == 0, result.stdout
