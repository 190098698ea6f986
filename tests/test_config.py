"""Tests for configuration loading and cache paths."""

import shutil
import tempfile
from pathlib import Path

import pytest
from pydantic import ValidationError

from memdock.config import Settings


@pytest.fixture
def temp_dir():
    path = tempfile.mkdtemp()
    yield path
    shutil.rmtree(path, ignore_errors=True)


class TestSettings:

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("MEMDOCK_RATE_LIMIT", "42")
        monkeypatch.setenv("MEMDOCK_ORG", "acme")
        config = Settings()
        assert config.rate_limit == 42
        assert config.org == "acme"

    def test_defaults(self, monkeypatch):
        for name in ("MEMDOCK_STALE_THRESHOLD_SECONDS", "MEMDOCK_SYNC_MAX_RECORDS", "MEMDOCK_RATE_LIMIT"):
            monkeypatch.delenv(name, raising=False)
        config = Settings(_env_file=None)
        assert config.stale_threshold_seconds == 300
        assert config.sync_max_records == 2000
        assert config.rate_limit == 500

    def test_rate_limit_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(rate_limit=0)

    def test_cache_path_layout(self, temp_dir):
        config = Settings(cache_dir=temp_dir)
        path = config.get_cache_path("acme", "web")
        assert path == Path(temp_dir) / "acme" / "web.db"
        assert path.parent.is_dir()

    def test_slugs_are_path_safe(self, temp_dir):
        config = Settings(cache_dir=temp_dir)
        path = config.get_cache_path("../evil", "a/b c")
        assert path.parent.parent == Path(temp_dir)
        assert "/" not in path.name
