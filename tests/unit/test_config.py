"""Tests for the configuration layer."""

import json
from pathlib import Path

import pytest

from provisioner.config import ConfigPriority, ProvisionerConfig
from provisioner.config.base import BaseConfig, ConfigurationSchema
from provisioner.config.settings import DEFAULT_CLIENTS_FACTORY
from provisioner.orchestration.workflow_engine.steps import ParallelFailurePolicy


@pytest.fixture
def isolated_cwd(tmp_path, monkeypatch):
    """Run from an empty directory so no stray .env file is picked up."""
    monkeypatch.chdir(tmp_path)
    return tmp_path


class TestDefaults:
    def test_default_values(self, isolated_cwd):
        config = ProvisionerConfig()

        assert config.checkpoint_dir == Path(".provisioner/checkpoints")
        assert config.max_workers == 4
        assert config.parallel_timeout == 600.0
        assert config.parallel_failure_policy == "isolate"
        assert config.ready_delays == (2.0, 4.0, 8.0, 16.0, 32.0)
        assert config.retain_completed_checkpoint is False
        assert config.clients_factory == DEFAULT_CLIENTS_FACTORY

    def test_orchestrator_settings(self, isolated_cwd):
        settings = ProvisionerConfig().orchestrator_settings()

        assert settings.max_workers == 4
        assert settings.parallel_failure_policy is ParallelFailurePolicy.ISOLATE
        assert settings.retain_completed_checkpoint is False


class TestOverlayPrecedence:
    """CLI beats environment beats file beats defaults."""

    def test_environment_overrides_default(self, isolated_cwd, monkeypatch):
        monkeypatch.setenv("PROVISIONER_MAX_WORKERS", "8")
        monkeypatch.setenv("PROVISIONER_READY_DELAYS", "1, 2,3")
        monkeypatch.setenv("PROVISIONER_RETAIN_COMPLETED_CHECKPOINT", "yes")

        config = ProvisionerConfig()

        assert config.max_workers == 8
        assert config.ready_delays == (1.0, 2.0, 3.0)
        assert config.retain_completed_checkpoint is True

    def test_cli_overlay_beats_environment(self, isolated_cwd, monkeypatch):
        monkeypatch.setenv("PROVISIONER_CHECKPOINT_DIR", "/from/env")
        BaseConfig.set_overlay(
            ConfigPriority.CLI,
            {"PROVISIONER_CHECKPOINT_DIR": "/from/cli", "PROVISIONER_MANIFEST_DIR": None},
        )

        config = ProvisionerConfig()

        assert config.checkpoint_dir == Path("/from/cli")
        assert config.manifest_dir == Path(".provisioner/batches")

    def test_file_overlay_below_environment(self, isolated_cwd, monkeypatch):
        settings_file = isolated_cwd / "settings.json"
        settings_file.write_text(
            json.dumps({"provisioner_max_workers": 2, "provisioner_log_level": "debug"})
        )
        monkeypatch.setenv("PROVISIONER_MAX_WORKERS", "6")

        BaseConfig.load_file(settings_file)
        config = ProvisionerConfig()

        assert config.max_workers == 6
        assert config.log_level == "DEBUG"

    def test_file_must_be_object(self, isolated_cwd):
        settings_file = isolated_cwd / "settings.json"
        settings_file.write_text("[1, 2]")
        with pytest.raises(ValueError, match="JSON object"):
            BaseConfig.load_file(settings_file)

    def test_dotenv_loaded_without_overriding(self, isolated_cwd, monkeypatch):
        (isolated_cwd / ".env").write_text(
            "PROVISIONER_LOG_LEVEL=warning\nPROVISIONER_MAX_WORKERS=3\n"
        )
        monkeypatch.setenv("PROVISIONER_MAX_WORKERS", "5")
        # load_dotenv writes into os.environ; let monkeypatch restore it
        monkeypatch.setenv("PROVISIONER_LOG_LEVEL", "")
        monkeypatch.delenv("PROVISIONER_LOG_LEVEL")

        config = ProvisionerConfig()

        assert config.log_level == "WARNING"
        assert config.max_workers == 5


class TestValidation:
    @pytest.mark.parametrize(
        "key,value",
        [
            ("PROVISIONER_PARALLEL_FAILURE_POLICY", "panic"),
            ("PROVISIONER_LOG_LEVEL", "chatty"),
            ("PROVISIONER_MAX_WORKERS", "0"),
            ("PROVISIONER_READY_DELAYS", "2,-1"),
            ("PROVISIONER_CLIENTS_FACTORY", "no_colon_here"),
        ],
    )
    def test_invalid_values_rejected(self, isolated_cwd, monkeypatch, key, value):
        monkeypatch.setenv(key, value)
        with pytest.raises(ValueError):
            ProvisionerConfig()

    @pytest.mark.parametrize("value", ["0", "-5"])
    def test_non_positive_timeout_rejected(self, isolated_cwd, monkeypatch, value):
        monkeypatch.setenv("PROVISIONER_PARALLEL_TIMEOUT", value)
        with pytest.raises(ValueError, match="parallel_timeout"):
            ProvisionerConfig()

    def test_timeout_override(self, isolated_cwd, monkeypatch):
        monkeypatch.setenv("PROVISIONER_PARALLEL_TIMEOUT", "45")
        config = ProvisionerConfig()
        assert config.parallel_timeout == 45.0
        assert config.orchestrator_settings().parallel_timeout == 45.0

    def test_schema_required_fields(self):
        schema = ConfigurationSchema(name="Demo", required_fields={"a"})
        with pytest.raises(ValueError, match="Required field 'a'"):
            schema.validate({})


class TestHelpers:
    @pytest.mark.parametrize(
        "value,expected",
        [(True, True), ("on", True), ("1", True), ("false", False), ("", False), (0, False)],
    )
    def test_parse_bool(self, value, expected):
        assert BaseConfig.parse_bool(value) is expected

    def test_parse_list(self):
        assert BaseConfig.parse_list("a, b,,c") == ["a", "b", "c"]
        assert BaseConfig.parse_list((1, 2)) == [1, 2]
        assert BaseConfig.parse_list(None) == []

    def test_singleton_instance(self, isolated_cwd):
        assert ProvisionerConfig.get_instance() is ProvisionerConfig.get_instance()
