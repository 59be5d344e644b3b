"""L1 Unit Tests: settings and logging setup."""

import logging

import pytest

from memcore.config import Settings
from memcore.core.errors import ConfigurationError
from memcore.logging_config import setup_logging
from memcore.memory.extractor import ExtractionConfig


class TestSettings:
    def test_defaults(self, tmp_path):
        config = Settings(project_root=tmp_path, _env_file=None)
        assert config.db_full_path == tmp_path / "data" / "memcore.db"
        assert config.patterns_path is None
        assert "user:preference" in config.multi_valued_slots
        assert config.extract_on_store is True
        assert config.rerank_enabled is True
        assert config.rerank_keyword_weight == 0.2

    def test_env_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MEMCORE_EXTRACTION_ENGINE_VERSION", "2.0.0")
        monkeypatch.setenv("MEMCORE_DEDUP_SIMILARITY_THRESHOLD", "0.8")
        config = Settings(project_root=tmp_path, _env_file=None)
        assert config.extraction_engine_version == "2.0.0"
        assert config.dedup_similarity_threshold == 0.8

    def test_env_file(self, tmp_path):
        env = tmp_path / ".env"
        env.write_text("MEMCORE_LOG_LEVEL=DEBUG\n", encoding="utf-8")
        config = Settings(project_root=tmp_path, _env_file=env)
        assert config.log_level == "DEBUG"

    def test_patterns_path(self, tmp_path):
        config = Settings(
            project_root=tmp_path, extraction_patterns_file="rules.json", _env_file=None
        )
        assert config.patterns_path == tmp_path / "rules.json"

    def test_missing_patterns_file(self, tmp_path):
        config = Settings(
            project_root=tmp_path, extraction_patterns_file="rules.json", _env_file=None
        )
        with pytest.raises(ConfigurationError):
            ExtractionConfig.from_settings(config)


class TestLogging:
    def test_setup_logging_quiets_jieba(self, tmp_path):
        setup_logging(Settings(project_root=tmp_path, log_level="DEBUG", _env_file=None))
        assert logging.getLogger("jieba").level == logging.WARNING
