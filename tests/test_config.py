"""
Tests for configuration loading.
"""

import pytest

from flowgate.core.config import (
    EngineConfig,
    FlowgateConfig,
    LogLevel,
    get_config,
    reset_config,
    set_config,
)


class TestFlowgateConfig:
    """Tests for the settings model."""

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("FLOWGATE_ENGINE__MAX_WORKERS", "3")
        monkeypatch.setenv("FLOWGATE_LOG_LEVEL", "debug")

        config = FlowgateConfig()

        assert config.engine.max_workers == 3
        assert config.log_level == LogLevel.DEBUG

    def test_file_round_trip(self, tmp_path):
        path = tmp_path / "conf" / "flowgate.json"
        original = FlowgateConfig(instance_id="plant-7", engine=EngineConfig(max_workers=2))

        original.to_file(path)
        loaded = FlowgateConfig.from_file(path)

        assert loaded.instance_id == "plant-7"
        assert loaded.engine.max_workers == 2
        assert loaded.model_dump() == original.model_dump()

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            FlowgateConfig.from_file(tmp_path / "absent.json")

    def test_global_instance(self):
        custom = FlowgateConfig(instance_id="custom")
        set_config(custom)
        assert get_config() is custom

        reset_config()
        assert get_config().instance_id == "flowgate-primary"
        reset_config()
