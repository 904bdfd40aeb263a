"""Tests for TOML configuration loading and saving."""

from pathlib import Path

import pytest

from embsync.config import (
    CONFIG_FILENAME,
    IndexerConfig,
    get_store_path,
    load_config,
    load_or_create_config,
    save_config,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("EMBSYNC_STORE_PATH", "EMBSYNC_API_URL", "EMBSYNC_API_KEY", "EMBSYNC_SOURCE_PATH"):
        monkeypatch.delenv(var, raising=False)


class TestDefaults:
    def test_defaults(self, tmp_path):
        config = IndexerConfig(path=tmp_path)
        assert config.min_content_length == 40
        assert config.batch_size == 500
        assert config.full_diff_safety_interval_ms == 7 * 24 * 60 * 60 * 1000
        assert config.max_failure_count == 5
        assert config.embedding_dimensions == 512

    def test_model_key_defaults_from_dimensions(self, tmp_path):
        config = IndexerConfig(path=tmp_path, embedding_dimensions=256)
        assert config.effective_model_id == "voyage-3-int8-256"
        assert config.model_key == ("voyage-3-int8-256", 256)

    def test_explicit_model_id(self, tmp_path):
        config = IndexerConfig(path=tmp_path, model_id="custom")
        assert config.model_key == ("custom", 512)


class TestValidate:
    @pytest.mark.parametrize("field,value", [
        ("batch_size", 0),
        ("batch_size", 501),
        ("min_content_length", -1),
        ("page_size", 0),
        ("max_failure_count", 0),
        ("embedding_dimensions", 0),
        ("full_diff_safety_interval_ms", 0),
    ])
    def test_out_of_range(self, tmp_path, field, value):
        config = IndexerConfig(path=tmp_path, **{field: value})
        with pytest.raises(ValueError):
            config.validate()

    def test_backoff_max_below_base(self, tmp_path):
        config = IndexerConfig(
            path=tmp_path, retry_backoff_base_seconds=60, retry_backoff_max_seconds=30,
        )
        with pytest.raises(ValueError, match="retry_backoff_max_seconds"):
            config.validate()


class TestPersistence:
    def test_create_writes_file(self, tmp_path):
        config = load_or_create_config(tmp_path / "store")
        assert (tmp_path / "store" / CONFIG_FILENAME).exists()
        assert config.batch_size == 500

    def test_round_trip(self, tmp_path):
        config = IndexerConfig(
            path=tmp_path,
            min_content_length=10,
            batch_size=100,
            max_failure_count=3,
            embedding_dimensions=1024,
            model_id="voyage-3-large",
            source_path=tmp_path / "source.db",
        )
        config.service.api_url = "https://embeddings.internal.example"
        save_config(config)

        loaded = load_config(tmp_path)
        assert loaded.min_content_length == 10
        assert loaded.batch_size == 100
        assert loaded.max_failure_count == 3
        assert loaded.model_key == ("voyage-3-large", 1024)
        assert loaded.source_path == tmp_path / "source.db"
        assert loaded.service.api_url == "https://embeddings.internal.example"

    def test_api_key_never_written(self, tmp_path):
        config = IndexerConfig(path=tmp_path)
        config.service.api_key = "sk-secret"
        save_config(config)
        assert "sk-secret" not in (tmp_path / CONFIG_FILENAME).read_text()

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path)

    def test_newer_version_rejected(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text("[store]\nversion = 99\n")
        with pytest.raises(ValueError, match="newer"):
            load_config(tmp_path)

    def test_invalid_values_rejected(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text("[indexer]\nbatch_size = 2000\n")
        with pytest.raises(ValueError, match="batch_size"):
            load_config(tmp_path)

    def test_partial_file_uses_defaults(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text("[embedding]\ndimensions = 256\n")
        config = load_config(tmp_path)
        assert config.embedding_dimensions == 256
        assert config.min_content_length == 40


class TestEnvironment:
    def test_env_overrides(self, tmp_path, monkeypatch):
        save_config(IndexerConfig(path=tmp_path))
        monkeypatch.setenv("EMBSYNC_API_KEY", "env-key")
        monkeypatch.setenv("EMBSYNC_API_URL", "https://other.example")
        monkeypatch.setenv("EMBSYNC_SOURCE_PATH", str(tmp_path / "records.db"))

        config = load_or_create_config(tmp_path)

        assert config.service.api_key == "env-key"
        assert config.service.api_url == "https://other.example"
        assert config.source_path == tmp_path / "records.db"

    def test_store_path_resolution(self, tmp_path, monkeypatch):
        assert get_store_path(tmp_path) == tmp_path.resolve()
        monkeypatch.setenv("EMBSYNC_STORE_PATH", str(tmp_path / "env"))
        assert get_store_path() == (tmp_path / "env").resolve()

    def test_default_store_path(self):
        assert get_store_path() == Path.home() / ".embsync"
