"""
Unit tests for configuration loading.
"""

import pytest

from dataproc.src.config import (
    DEFAULT_ITEM_TIMEOUT,
    DEFAULT_MAX_CONCURRENCY,
    ConfigError,
    PipelineConfig,
    load_config,
)


class TestPipelineConfig:
    """Tests for PipelineConfig.from_dict and validate."""

    def test_defaults(self):
        config = PipelineConfig.from_dict({})

        assert config.processing.max_concurrency == DEFAULT_MAX_CONCURRENCY
        assert config.processing.item_timeout == DEFAULT_ITEM_TIMEOUT
        assert config.schedule.overlap_policy == "skip"
        assert config.execution.backend == "ecs"

    def test_partial_sections(self):
        config = PipelineConfig.from_dict({
            "processing": {"max_concurrency": 4},
            "region": "eu-west-1",
        })
        assert config.processing.max_concurrency == 4
        assert config.processing.max_attempts == 3
        assert config.region == "eu-west-1"

    def test_unknown_section_rejected(self):
        with pytest.raises(ConfigError, match="Unknown config sections"):
            PipelineConfig.from_dict({"procesing": {}})

    def test_unknown_key_rejected(self):
        with pytest.raises(ConfigError, match="processing"):
            PipelineConfig.from_dict({"processing": {"concurrency": 4}})

    @pytest.mark.parametrize("section,values", [
        ("processing", {"max_concurrency": 0}),
        ("processing", {"max_attempts": 0}),
        ("processing", {"item_timeout": 0}),
        ("processing", {"backoff_base": -1}),
        ("preparation", {"max_attempts": 0}),
        ("schedule", {"overlap_policy": "replace"}),
        ("execution", {"backend": "kubernetes"}),
        ("execution", {"cpu": 0}),
    ])
    def test_invalid_values_rejected(self, section, values):
        with pytest.raises(ConfigError):
            PipelineConfig.from_dict({section: values})

    def test_config_error_is_value_error(self):
        assert issubclass(ConfigError, ValueError)


class TestLoadConfig:
    """Tests for load_config."""

    def test_yaml_file(self, tmp_path, clean_env):
        path = tmp_path / "config.yaml"
        path.write_text(
            "storage:\n"
            "  input_bucket: my-bucket\n"
            "processing:\n"
            "  max_concurrency: 3\n"
            "schedule:\n"
            "  overlap_policy: queue\n"
        )

        config = load_config(str(path), load_env_file=False)

        assert config.storage.input_bucket == "my-bucket"
        assert config.processing.max_concurrency == 3
        assert config.schedule.overlap_policy == "queue"

    def test_env_overrides_yaml(self, tmp_path, clean_env):
        path = tmp_path / "config.yaml"
        path.write_text("processing:\n  max_concurrency: 3\n")
        clean_env.setenv("MAX_CONCURRENCY", "7")
        clean_env.setenv("INPUT_BUCKET", "env-bucket")
        clean_env.setenv("AWS_REGION", "eu-central-1")

        config = load_config(str(path), load_env_file=False)

        assert config.processing.max_concurrency == 7
        assert config.storage.input_bucket == "env-bucket"
        assert config.region == "eu-central-1"

    def test_config_path_env(self, tmp_path, clean_env):
        path = tmp_path / "other.yaml"
        path.write_text("execution:\n  backend: local\n")
        clean_env.setenv("CONFIG_PATH", str(path))

        assert load_config(load_env_file=False).execution.backend == "local"

    def test_invalid_env_value(self, tmp_path, clean_env):
        path = tmp_path / "config.yaml"
        path.write_text("{}\n")
        clean_env.setenv("MAX_CONCURRENCY", "many")

        with pytest.raises(ConfigError, match="MAX_CONCURRENCY"):
            load_config(str(path), load_env_file=False)

    def test_missing_file(self, tmp_path, clean_env):
        with pytest.raises(ConfigError, match="not found"):
            load_config(str(tmp_path / "missing.yaml"), load_env_file=False)

    def test_non_mapping_file(self, tmp_path, clean_env):
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ConfigError, match="mapping"):
            load_config(str(path), load_env_file=False)

    def test_shipped_local_config_is_valid(self, clean_env):
        from dataproc.src.config import PROJECT_ROOT

        config = load_config(str(PROJECT_ROOT / "dataproc" / "config" / "local.yaml"), load_env_file=False)
        assert config.execution.backend == "local"
