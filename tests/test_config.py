"""
Unit tests for configuration loading and validation
"""

import pytest
from pathlib import Path

from gogstash_dockerlog.config import (
    ConfigError,
    DEFAULT_EXCLUDE_PATTERNS,
    InputConfig,
    normalize_endpoint,
)
from gogstash_dockerlog.robustness import ConfigValidator


class TestInputConfig:

    def test_defaults(self):
        config = InputConfig.load(environ={})
        assert config.runtime_endpoint == "unix:///var/run/docker.sock"
        assert config.include_patterns == ()
        assert config.exclude_patterns == DEFAULT_EXCLUDE_PATTERNS
        assert config.checkpoint_path == "sincedb-%{HOSTNAME}"
        assert config.retry_interval_seconds == 10
        assert config.output_path is None

    def test_environment_overrides_yaml(self, tmp_path):
        config_file = tmp_path / "dockerlog.yaml"
        config_file.write_text(
            "include_patterns:\n  - ^web\n  - ^api\n"
            "retry_interval_seconds: 30\n"
            "checkpoint_path: /data/sincedb\n"
        )
        config = InputConfig.load(environ={
            "DOCKERLOG_CONFIG_FILE": str(config_file),
            "RETRY_INTERVAL_SECONDS": "5",
        })
        assert config.include_patterns == ("^web", "^api")
        assert config.retry_interval_seconds == 5
        assert config.checkpoint_path == "/data/sincedb"

    def test_patterns_from_comma_separated_env(self):
        config = InputConfig.load(environ={"INCLUDE_PATTERNS": "^web, worker ,", "EXCLUDE_PATTERNS": "tmp"})
        assert config.include_patterns == ("^web", "worker")
        assert config.exclude_patterns == ("tmp",)

    def test_runtime_endpoint_takes_precedence_over_docker_host(self):
        config = InputConfig.load(environ={
            "RUNTIME_ENDPOINT": "unix:///run/podman.sock",
            "DOCKER_HOST": "tcp://10.0.0.1:2375",
        })
        assert config.runtime_endpoint == "unix:///run/podman.sock"

    def test_tcp_endpoint_is_normalized(self):
        config = InputConfig.load(environ={"DOCKER_HOST": "tcp://10.0.0.1:2375"})
        assert config.runtime_endpoint == "http://10.0.0.1:2375"
        assert normalize_endpoint("unix:///var/run/docker.sock") == "unix:///var/run/docker.sock"

    def test_invalid_integer_is_config_error(self):
        with pytest.raises(ConfigError):
            InputConfig.load(environ={"RETRY_INTERVAL_SECONDS": "soon"})

    def test_missing_config_file_is_config_error(self, tmp_path):
        with pytest.raises(ConfigError):
            InputConfig.load(path=str(tmp_path / "nope.yaml"), environ={})

    def test_non_mapping_yaml_is_config_error(self, tmp_path):
        config_file = tmp_path / "dockerlog.yaml"
        config_file.write_text("- just\n- a list\n")
        with pytest.raises(ConfigError):
            InputConfig.load(path=str(config_file), environ={})

    def test_unknown_keys_are_config_error(self):
        with pytest.raises(ConfigError, match="include_pattern"):
            InputConfig.from_mapping({"queue_size": "50", "include_pattern": ["^web"]})

    def test_typo_in_yaml_is_config_error(self, tmp_path):
        config_file = tmp_path / "dockerlog.yaml"
        config_file.write_text("exclude_pattern:\n  - tmp\n")
        with pytest.raises(ConfigError):
            InputConfig.load(path=str(config_file), environ={})

    def test_debug_mode_from_env(self):
        assert InputConfig.load(environ={"DEBUG_MODE": "true"}).debug_mode is True
        assert InputConfig.load(environ={"DEBUG_MODE": "0"}).debug_mode is False

    def test_resolve_checkpoint_path_substitutes_hostname(self):
        config = InputConfig(checkpoint_path="/var/lib/gogstash/sincedb-%{HOSTNAME}")
        assert config.resolve_checkpoint_path("node-7") == Path("/var/lib/gogstash/sincedb-node-7")

    def test_resolve_checkpoint_path_without_placeholder(self):
        config = InputConfig(checkpoint_path="/tmp/sincedb")
        assert config.resolve_checkpoint_path("node-7") == Path("/tmp/sincedb")

    def test_with_overrides_returns_new_instance(self):
        base = InputConfig()
        changed = base.with_overrides(retry_interval_seconds=2)
        assert changed.retry_interval_seconds == 2
        assert base.retry_interval_seconds == 10


class TestConfigValidator:

    def test_valid_config(self, tmp_path):
        validator = ConfigValidator(InputConfig(checkpoint_path=str(tmp_path / "sincedb-%{HOSTNAME}")))
        assert validator.validate_all()
        assert validator.errors == []
        # sem include_patterns tudo que não for excluído é lido
        assert validator.warnings

    def test_non_positive_values_are_errors(self, tmp_path):
        config = InputConfig(checkpoint_path=str(tmp_path / "sincedb"), retry_interval_seconds=0, queue_size=-1)
        validator = ConfigValidator(config)
        assert not validator.validate_all()
        assert len(validator.errors) == 2

    def test_unsupported_endpoint_scheme(self, tmp_path):
        config = InputConfig(checkpoint_path=str(tmp_path / "sincedb"), runtime_endpoint="ftp://docker")
        validator = ConfigValidator(config)
        assert not validator.validate_all()
        assert "runtime_endpoint" in validator.errors[0]

    def test_malformed_pattern(self, tmp_path):
        config = InputConfig(checkpoint_path=str(tmp_path / "sincedb"), include_patterns=("web(",))
        assert not ConfigValidator(config).validate_all()

    def test_checkpoint_parent_must_be_directory(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        config = InputConfig(checkpoint_path=str(blocker / "sincedb"))
        assert not ConfigValidator(config).validate_all()
