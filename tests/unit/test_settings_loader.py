"""Unit tests for Settings accessors and the YAML config loader."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from src.config.loader import load_settings
from src.config.settings import BREAKER_PRESETS, Settings
from src.utils.errors import ConfigurationError


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Run each test away from any real .env file and APP_ENV setting."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("APP_ENV", raising=False)
    for name in ("RETRIEVAL_TOP_K", "CHUNK_SIZE", "REDIS_URL", "OPENAI_API_KEY"):
        monkeypatch.delenv(name, raising=False)


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


# ======================================================================
# Settings accessors
# ======================================================================


class TestSettings:
    def test_component_configs_mirror_fields(self) -> None:
        settings = Settings(chunk_size=300, chunk_overlap=30, retrieval_top_k=8)
        assert settings.chunking_config().chunk_size == 300
        assert settings.chunking_config().chunk_overlap == 30
        assert settings.retrieval_config().default_top_k == 8
        assert settings.cache_config().ttl_seconds == 300
        assert settings.embedding_config().model == "text-embedding-3-small"

    def test_breaker_presets(self) -> None:
        settings = Settings()
        openai_cfg = settings.circuit_breaker_config("openai")
        assert openai_cfg.failure_threshold == 3
        assert openai_cfg.open_timeout_ms == 60_000
        assert openai_cfg.volume_threshold == 5
        redis_cfg = settings.circuit_breaker_config("redis")
        assert redis_cfg.call_timeout_seconds == 2.0
        assert set(BREAKER_PRESETS) == {"openai", "vector_store", "redis"}

    def test_unknown_service_uses_settings_defaults(self) -> None:
        cfg = Settings(circuit_failure_threshold=7).circuit_breaker_config("search")
        assert cfg.failure_threshold == 7
        assert cfg.window_ms == 60_000

    def test_overrides_win_over_presets(self) -> None:
        settings = Settings(circuit_breaker_overrides={"openai": {"failure_threshold": 9}})
        assert settings.circuit_breaker_config("openai").failure_threshold == 9
        assert settings.circuit_breaker_config("openai").success_threshold == 2

    @pytest.mark.parametrize(
        "overrides",
        [
            {"chunk_size": 40},
            {"chunk_size": 100, "chunk_overlap": 100},
            {"retrieval_threshold": 1.2},
            {"retrieval_top_k": 50},
            {"circuit_breaker_overrides": {"redis": {"success_threshold": 5}}},
        ],
    )
    def test_validate_all_rejects_bad_ranges(self, overrides: dict) -> None:
        with pytest.raises(ValidationError):
            Settings(**overrides).validate_all()


# ======================================================================
# YAML loader
# ======================================================================


class TestLoadSettings:
    def test_missing_file_gives_defaults(self, tmp_path: Path) -> None:
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings.chunk_size == 500
        assert settings.retrieval_threshold == 0.7

    def test_sections_map_to_fields(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path / "config" / "config.yaml",
            "chunking:\n  chunk_size: 256\n  chunk_overlap: 32\n"
            "retrieval:\n  top_k: 8\n  threshold: 0.5\n"
            "cache:\n  ttl_seconds: 60\n"
            "chromadb:\n  persist_dir: /tmp/chroma\n"
            "circuit_breakers:\n  openai:\n    failure_threshold: 4\n"
            "log:\n  level: DEBUG\n",
        )
        settings = load_settings(str(path))
        assert settings.chunk_size == 256
        assert settings.chunk_overlap == 32
        assert settings.retrieval_top_k == 8
        assert settings.retrieval_threshold == 0.5
        assert settings.cache_ttl_seconds == 60
        assert settings.chromadb_persist_dir == "/tmp/chroma"
        assert settings.log_level == "DEBUG"
        assert settings.circuit_breaker_config("openai").failure_threshold == 4

    def test_unknown_keys_are_ignored(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "config.yaml", "chunking:\n  colour: blue\nmystery: 1\n")
        assert load_settings(str(path)).chunk_size == 500

    def test_environment_overrides_yaml(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        path = _write(tmp_path / "config.yaml", "retrieval:\n  top_k: 8\n")
        monkeypatch.setenv("RETRIEVAL_TOP_K", "3")
        assert load_settings(str(path)).retrieval_top_k == 3

    def test_env_specific_overlay(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = _write(tmp_path / "config.yaml", "retrieval:\n  top_k: 8\n  threshold: 0.6\n")
        _write(tmp_path / "config.production.yaml", "retrieval:\n  top_k: 10\n")
        monkeypatch.setenv("APP_ENV", "production")
        settings = load_settings(str(path))
        assert settings.retrieval_top_k == 10
        assert settings.retrieval_threshold == 0.6

    def test_malformed_yaml(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "config.yaml", "chunking: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Malformed YAML"):
            load_settings(str(path))

    def test_non_mapping_yaml(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "config.yaml", "- just\n- a list\n")
        with pytest.raises(ConfigurationError, match="must be a mapping"):
            load_settings(str(path))

    def test_invalid_values_raise_configuration_error(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "config.yaml", "chunking:\n  chunk_size: 10\n")
        with pytest.raises(ConfigurationError, match="Invalid configuration"):
            load_settings(str(path))

    def test_repository_config_loads(self, project_root: Path) -> None:
        settings = load_settings(str(project_root / "config" / "config.yaml"))
        assert settings.chunk_size == 500
        assert settings.circuit_breaker_config("openai").failure_threshold == 3
