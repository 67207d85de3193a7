"""
Unit tests for config_loader module.
"""

from pathlib import Path

import pytest
import yaml

from lesson_intelligence.models.data_structures import Stage
from lesson_intelligence.utils.config_loader import Config, SystemConfig

PROJECT_ROOT = Path(__file__).resolve().parents[2]


def minimal_config() -> dict:
    return {
        "paths": {"data_dir": "data", "blob_dir": "data/blobs"},
        "database": {"path": "data/lessons.db"},
        "storage": {"signing_secret_env": "LESSON_BLOB_SECRET"},
        "pipeline": {
            "stages": {"transcribe": {"batch_size": 4, "max_concurrency": 2}},
            "retry": {"max_attempts": 3},
        },
        "rasterization": {"dpi": 144},
        "llm": {
            "primary_provider": {
                "name": "openai",
                "api_key_env": "OPENAI_API_KEY",
                "model": "gpt-4o",
            }
        },
        "logging": {"level": "INFO", "log_dir": "logs"},
    }


def write_config(tmp_path: Path, data: dict) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


class TestLoad:
    """Tests for Config.load."""

    def test_resolves_relative_paths(self, tmp_path):
        path = write_config(tmp_path, minimal_config())

        config = Config.load(str(path), project_root=tmp_path)

        assert config.database["path"] == str(tmp_path / "data/lessons.db")
        assert config.paths["blob_dir"] == str(tmp_path / "data/blobs")
        assert config.speech == {}

    def test_stage_settings(self, tmp_path):
        config = Config.load(str(write_config(tmp_path, minimal_config())), tmp_path)

        assert config.stage_settings(Stage.TRANSCRIBE) == {
            "batch_size": 4,
            "max_concurrency": 2,
        }
        assert config.stage_settings(Stage.ENRICH) == {}

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Config.load(str(tmp_path / "nope.yaml"), project_root=tmp_path)

    def test_missing_section_raises(self, tmp_path):
        data = minimal_config()
        del data["llm"]
        with pytest.raises(KeyError):
            Config.load(str(write_config(tmp_path, data)), project_root=tmp_path)

    def test_non_mapping_raises(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ValueError):
            Config.load(str(path), project_root=tmp_path)

    def test_shipped_config_is_valid(self):
        config = Config.load("config/pipeline_config.yaml", project_root=PROJECT_ROOT)
        assert Config.validate(config) == []


class TestValidate:
    """Tests for Config.validate."""

    def test_minimal_config_is_valid(self, tmp_path):
        config = SystemConfig(**minimal_config())
        assert Config.validate(config) == []

    def test_reports_problems(self):
        data = minimal_config()
        data["pipeline"]["stages"]["translate"] = {}
        data["pipeline"]["stages"]["enrich"] = {"batch_size": 0}
        data["pipeline"]["retry"] = {"max_attempts": 0, "jitter": 2}
        data["rasterization"]["dpi"] = 1200
        data["llm"]["primary_provider"] = {"name": "openai"}

        errors = Config.validate(SystemConfig(**data))

        joined = "\n".join(errors)
        assert "Unknown stage in pipeline.stages: translate" in joined
        assert "pipeline.stages.enrich.batch_size" in joined
        assert "max_attempts" in joined
        assert "jitter" in joined
        assert "rasterization.dpi" in joined
        assert "api_key_env" in joined

    def test_file_in_place_of_directory(self, tmp_path):
        blocker = tmp_path / "blobs"
        blocker.write_text("not a dir")
        data = minimal_config()
        data["paths"]["blob_dir"] = str(blocker)

        errors = Config.validate(SystemConfig(**data))

        assert any("paths.blob_dir" in e for e in errors)
