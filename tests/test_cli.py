"""
Tests for the memdock CLI.

These tests verify the command-line interface functionality using subprocess calls.
"""

import json
import os
import sys
import shutil
import tempfile
import subprocess

import pytest

TWO_FACTS = (
    "Do not call Stripe in self-hosted mode, only run billing checks when SELF_HOSTED is false.\n"
    "We fixed the OAuth callback bug in apps/web/app/api/auth/route.ts by validating state first."
)


@pytest.fixture
def cache_dir():
    """Create a temporary cache root for testing."""
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def cli_env(cache_dir):
    """Environment pointing the CLI at a temp cache and an unreachable store."""
    env = os.environ.copy()
    env['MEMDOCK_CACHE_DIR'] = cache_dir
    # Nothing listens on the discard port, so connections are refused at once
    env['MEMDOCK_API_URL'] = "http://127.0.0.1:9/api/v1"
    env['MEMDOCK_LOG_LEVEL'] = "WARNING"
    return env


def run_cli(*args, env=None):
    """Run CLI command and return result."""
    cmd = [sys.executable, "-m", "memdock.cli", "--org", "acme", "--project", "web"]
    cmd.extend(args)
    return subprocess.run(cmd, capture_output=True, text=True, env=env)


class TestCLIHelp:

    def test_help_displays(self):
        result = subprocess.run(
            [sys.executable, "-m", "memdock.cli", "--help"], capture_output=True, text=True
        )
        assert result.returncode == 0
        assert "memdock CLI" in result.stdout or "usage:" in result.stdout.lower()

    def test_no_command_shows_help(self, cli_env):
        result = run_cli(env=cli_env)
        assert result.returncode == 1


class TestClassifyCommand:

    def test_json_output(self, cli_env):
        result = run_cli("--json", "classify", "src/auth/middleware.ts", env=cli_env)
        assert result.returncode == 0

        data = json.loads(result.stdout)
        assert data["intent"] == "entity"
        assert data["confidence"] == 0.9
        assert "src/auth/middleware.ts" in data["extracted_terms"]

    def test_text_output(self, cli_env):
        result = run_cli("classify", "what changed recently in billing", env=cli_env)
        assert result.returncode == 0
        assert "Intent: temporal" in result.stdout


class TestExtractCommand:

    def test_json_output(self, cli_env):
        result = run_cli("--json", "extract", "--assistant", TWO_FACTS, env=cli_env)
        assert result.returncode == 0

        data = json.loads(result.stdout)
        assert sorted(c["type"] for c in data) == ["constraints", "lessons_learned"]

    def test_low_signal(self, cli_env):
        result = run_cli("extract", "--assistant", "Use rg to search for patterns in files.", env=cli_env)
        assert result.returncode == 0
        assert "Found 0 candidate(s)" in result.stdout


class TestCacheCommands:

    def test_status_of_empty_cache(self, cli_env, cache_dir):
        result = run_cli("--json", "cache-status", env=cli_env)
        assert result.returncode == 0

        data = json.loads(result.stdout)
        assert data["org"] == "acme"
        assert data["project"] == "web"
        assert data["last_synced_at"] is None
        assert data["stale"] is True
        assert data["memories"] == 0
        assert data["pending_writes"] == 0
        assert data["cache_path"].startswith(cache_dir)

    def test_cache_dir_option(self, cli_env):
        other = tempfile.mkdtemp()
        try:
            result = run_cli("--cache-dir", other, "--json", "cache-status", env=cli_env)
            assert json.loads(result.stdout)["cache_path"].startswith(other)
        finally:
            shutil.rmtree(other, ignore_errors=True)

    def test_search_empty(self, cli_env):
        result = run_cli("--json", "cache-search", "auth", env=cli_env)
        assert result.returncode == 0
        assert json.loads(result.stdout) == {"memories": []}

    def test_get_missing_exits_nonzero(self, cli_env):
        result = run_cli("--json", "cache-get", "nope", env=cli_env)
        assert result.returncode == 1
        assert json.loads(result.stdout) == {"memory": None}


class TestRemoteCommandsOffline:

    def test_sync_fails_cleanly(self, cli_env):
        result = run_cli("--json", "sync", env=cli_env)
        assert result.returncode == 1
        assert "error" in json.loads(result.stdout)

    def test_capture_queues_then_replay_keeps_queue(self, cli_env):
        result = run_cli("--json", "capture", "--assistant", TWO_FACTS, env=cli_env)
        assert result.returncode == 0

        captured = json.loads(result.stdout)
        assert captured["extracted"] == 2
        assert captured["stored"] == 0
        assert len(captured["queued_keys"]) == 2

        pending = json.loads(run_cli("--json", "pending", env=cli_env).stdout)["pending"]
        assert [w["method"] for w in pending] == ["POST", "POST"]
        assert all(w["idempotency_key"] for w in pending)

        replay = run_cli("--json", "replay", env=cli_env)
        assert replay.returncode == 1
        data = json.loads(replay.stdout)
        assert (data["replayed"], data["failed"], data["cleared"]) == (0, 1, False)

        status = json.loads(run_cli("--json", "cache-status", env=cli_env).stdout)
        assert status["pending_writes"] == 2
