"""
Tests for StreamingConfig and the YAML loader.
"""

import pytest
from pydantic import ValidationError

from cncstream.streaming.domain.config import StreamingConfig, load_streaming_config


class TestStreamingConfig:
    """Defaults and validation."""

    def test_defaults(self):
        config = StreamingConfig()

        assert config.chunk_size == 1000
        assert config.max_concurrent_chunks == 1
        assert config.max_chunk_retries == 3
        assert config.chunk_timeout == 30.0
        assert config.checkpoint_interval == 5000
        assert config.max_checkpoints == 10
        assert config.warning_threshold < config.critical_threshold

    def test_frozen(self):
        config = StreamingConfig()

        with pytest.raises(ValidationError):
            config.chunk_size = 10

    def test_model_copy_derives_variant(self):
        variant = StreamingConfig().model_copy(update={"chunk_size": 50})

        assert variant.chunk_size == 50

    def test_thresholds_must_be_ordered(self):
        with pytest.raises(ValidationError, match="warning_threshold"):
            StreamingConfig(warning_threshold=0.9, critical_threshold=0.8)

    def test_reduction_factor_bounded(self):
        with pytest.raises(ValidationError):
            StreamingConfig(chunk_size_reduction=0.8)

    def test_unknown_keys_rejected(self):
        with pytest.raises(ValidationError):
            StreamingConfig(chunk_sise=10)


class TestLoadStreamingConfig:
    """YAML loading and overrides."""

    def test_flat_yaml(self, tmp_path):
        path = tmp_path / "streaming.yaml"
        path.write_text("chunk_size: 250\nmax_concurrent_chunks: 2\n", encoding="utf-8")

        config = load_streaming_config(path)

        assert config.chunk_size == 250
        assert config.max_concurrent_chunks == 2

    def test_nested_yaml_with_overrides(self, tmp_path):
        path = tmp_path / "cncstream.yaml"
        path.write_text("streaming:\n  chunk_size: 250\n  retention_days: 3\n", encoding="utf-8")

        config = load_streaming_config(path, chunk_size=500)

        assert config.chunk_size == 500
        assert config.retention_days == 3

    def test_without_file(self):
        assert load_streaming_config(None, chunk_timeout=5).chunk_timeout == 5.0

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("- 1\n- 2\n", encoding="utf-8")

        with pytest.raises(ValueError):
            load_streaming_config(path)
