"""Tests for StoreConfig construction and environment overrides."""

import logging
from pathlib import Path

import pytest

from intelstore.config import (
    DEFAULT_EMBEDDING_WIDTH,
    DEFAULT_LOCK_TIMEOUT,
    DEFAULT_REPLAY_DEPTH,
    StoreConfig,
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in (
        "INTELSTORE_DB_PATH",
        "INTELSTORE_MIRROR_PATH",
        "INTELSTORE_EMBEDDING_DIM",
        "INTELSTORE_REPLAY_DEPTH",
        "INTELSTORE_LOCK_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestStoreConfig:
    def test_defaults(self, tmp_path):
        config = StoreConfig(db_path=tmp_path / "intelligence.db")
        assert config.mirror_path == tmp_path / "intelligence.json"
        assert config.embedding_width == DEFAULT_EMBEDDING_WIDTH
        assert config.replay_depth == DEFAULT_REPLAY_DEPTH
        assert config.lock_timeout == DEFAULT_LOCK_TIMEOUT
        assert config.vector_widths == {}
        assert config.event_log is False
        assert config.data_dir == tmp_path

    def test_string_paths_are_converted(self, tmp_path):
        config = StoreConfig(db_path=str(tmp_path / "a.db"), mirror_path=str(tmp_path / "b.json"))
        assert isinstance(config.db_path, Path)
        assert config.mirror_path == tmp_path / "b.json"

    def test_home_is_expanded(self):
        config = StoreConfig(db_path="~/intel.db")
        assert "~" not in str(config.db_path)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"embedding_width": 0},
            {"vector_widths": {"memories": -1}},
            {"replay_depth": -1},
            {"lock_timeout": -0.5},
        ],
    )
    def test_invalid_values_rejected(self, tmp_path, kwargs):
        with pytest.raises(ValueError):
            StoreConfig(db_path=tmp_path / "i.db", **kwargs)

    def test_replay_depth_zero_allowed(self, tmp_path):
        assert StoreConfig(db_path=tmp_path / "i.db", replay_depth=0).replay_depth == 0


class TestForProject:
    def test_layout(self, tmp_path):
        config = StoreConfig.for_project(tmp_path)
        assert config.db_path == tmp_path / ".intelstore" / "intelligence.db"
        assert config.mirror_path == tmp_path / ".intelstore" / "intelligence.json"

    def test_overrides(self, tmp_path):
        config = StoreConfig.for_project(tmp_path, embedding_width=768, event_log=True)
        assert config.embedding_width == 768
        assert config.event_log is True


class TestFromEnv:
    def test_without_variables(self, tmp_path, clean_env):
        config = StoreConfig.from_env(tmp_path)
        assert config.db_path == tmp_path / ".intelstore" / "intelligence.db"
        assert config.embedding_width == DEFAULT_EMBEDDING_WIDTH

    def test_db_and_mirror_paths(self, tmp_path, clean_env):
        clean_env.setenv("INTELSTORE_DB_PATH", str(tmp_path / "custom.db"))
        clean_env.setenv("INTELSTORE_MIRROR_PATH", str(tmp_path / "elsewhere" / "m.json"))
        config = StoreConfig.from_env(tmp_path)
        assert config.db_path == tmp_path / "custom.db"
        assert config.mirror_path == tmp_path / "elsewhere" / "m.json"

    def test_mirror_follows_env_db(self, tmp_path, clean_env):
        clean_env.setenv("INTELSTORE_DB_PATH", str(tmp_path / "data" / "x.db"))
        assert StoreConfig.from_env().mirror_path == tmp_path / "data" / "intelligence.json"

    def test_numeric_variables(self, tmp_path, clean_env):
        clean_env.setenv("INTELSTORE_EMBEDDING_DIM", "768")
        clean_env.setenv("INTELSTORE_REPLAY_DEPTH", "10")
        clean_env.setenv("INTELSTORE_LOCK_TIMEOUT", "0.25")
        config = StoreConfig.from_env(tmp_path)
        assert config.embedding_width == 768
        assert config.replay_depth == 10
        assert config.lock_timeout == 0.25

    def test_malformed_values_fall_back(self, tmp_path, clean_env, caplog):
        clean_env.setenv("INTELSTORE_EMBEDDING_DIM", "wide")
        clean_env.setenv("INTELSTORE_LOCK_TIMEOUT", "soon")
        with caplog.at_level(logging.WARNING, logger="intelstore.config"):
            config = StoreConfig.from_env(tmp_path)
        assert config.embedding_width == DEFAULT_EMBEDDING_WIDTH
        assert config.lock_timeout == DEFAULT_LOCK_TIMEOUT
        assert "INTELSTORE_EMBEDDING_DIM" in caplog.text
        assert "INTELSTORE_LOCK_TIMEOUT" in caplog.text

    def test_out_of_range_value_raises(self, tmp_path, clean_env):
        clean_env.setenv("INTELSTORE_EMBEDDING_DIM", "-3")
        with pytest.raises(ValueError):
            StoreConfig.from_env(tmp_path)
