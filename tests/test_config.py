#!/usr/bin/env python3
"""Tests for config.py - driver configuration.

Tests verify:
1. Defaults when no config file exists
2. Config file discovery (explicit path, env var, base dir)
3. Environment variable overrides
4. CLI overrides and validation errors
"""

import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from config import (
    ConfigError,
    DriverConfig,
    discover_config_file,
    get_base_dir,
    load_config,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Isolate tests from the caller's STACK_DRIVER_* environment and base dir."""
    for name in ('STACK_DRIVER_CONFIG', 'STACK_DRIVER_STATE_DIR', 'STACK_DRIVER_MAX_WORKERS',
                 'STACK_DRIVER_POLL_INTERVAL', 'STACK_DRIVER_OPERATION_TIMEOUT',
                 'STACK_DRIVER_BACKEND', 'STACK_DRIVER_ENDPOINT', 'STACK_DRIVER_KINDS_FILE'):
        monkeypatch.delenv(name, raising=False)
    with patch('config.get_base_dir', return_value=tmp_path / 'base'):
        yield


class TestDefaults:
    """Test DriverConfig defaults."""

    def test_defaults(self):
        """Without a file or env, built-in defaults apply."""
        config = load_config()
        assert config.max_workers == 4
        assert config.poll_interval == 1.0
        assert config.backend == 'memory'
        assert config.config_file is None
        assert config.state_dir.name == '.states'

    def test_base_dir_is_repo_root(self):
        """get_base_dir points one level above src/."""
        assert (get_base_dir() / 'src' / 'config.py').exists()

    def test_string_paths_coerced(self):
        """String state_dir and kinds_file become Paths."""
        config = DriverConfig(state_dir='/tmp/states', kinds_file='/tmp/kinds.yaml')
        assert config.state_dir == Path('/tmp/states')
        assert config.kinds_file == Path('/tmp/kinds.yaml')


class TestConfigFile:
    """Test config file discovery and parsing."""

    def test_explicit_path(self, tmp_path):
        """--config path is loaded."""
        path = tmp_path / 'driver.yaml'
        path.write_text('max_workers: 8\npoll_interval: 0.5\n')
        config = load_config(str(path))
        assert config.max_workers == 8
        assert config.poll_interval == 0.5
        assert config.config_file == path

    def test_explicit_path_missing(self, tmp_path):
        """A missing explicit file is an error."""
        with pytest.raises(ConfigError, match='Config file not found'):
            load_config(str(tmp_path / 'nope.yaml'))

    def test_env_var_path(self, tmp_path, monkeypatch):
        """STACK_DRIVER_CONFIG names the file when no path is given."""
        path = tmp_path / 'env.yaml'
        path.write_text('backend: memory\n')
        monkeypatch.setenv('STACK_DRIVER_CONFIG', str(path))
        assert discover_config_file() == path

    def test_env_var_path_missing(self, tmp_path, monkeypatch):
        """STACK_DRIVER_CONFIG pointing nowhere is an error."""
        monkeypatch.setenv('STACK_DRIVER_CONFIG', str(tmp_path / 'gone.yaml'))
        with pytest.raises(ConfigError, match='does not exist'):
            discover_config_file()

    def test_base_dir_file(self, tmp_path):
        """stack-driver.yaml in the base dir is picked up."""
        base = tmp_path / 'base'
        base.mkdir()
        (base / 'stack-driver.yaml').write_text('max_workers: 2\n')
        assert load_config().max_workers == 2

    def test_no_file(self):
        """No file anywhere yields None."""
        assert discover_config_file() is None

    def test_unknown_setting(self, tmp_path):
        """Unknown keys are rejected rather than ignored."""
        path = tmp_path / 'driver.yaml'
        path.write_text('max_workers: 2\nparallelism: 9\n')
        with pytest.raises(ConfigError, match='Unknown settings in .*: parallelism'):
            load_config(str(path))

    def test_invalid_yaml(self, tmp_path):
        """Malformed YAML is reported with the file name."""
        path = tmp_path / 'driver.yaml'
        path.write_text('max_workers: [\n')
        with pytest.raises(ConfigError, match='Invalid YAML'):
            load_config(str(path))

    def test_not_a_mapping(self, tmp_path):
        """A YAML list is not a valid config."""
        path = tmp_path / 'driver.yaml'
        path.write_text('- a\n- b\n')
        with pytest.raises(ConfigError, match='must be a YAML object'):
            load_config(str(path))


class TestEnvOverrides:
    """Test STACK_DRIVER_* environment overrides."""

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        """Environment wins over the config file."""
        path = tmp_path / 'driver.yaml'
        path.write_text('max_workers: 8\n')
        monkeypatch.setenv('STACK_DRIVER_MAX_WORKERS', '3')
        monkeypatch.setenv('STACK_DRIVER_STATE_DIR', str(tmp_path / 'states'))
        config = load_config(str(path))
        assert config.max_workers == 3
        assert config.state_dir == tmp_path / 'states'

    def test_invalid_env_value(self, monkeypatch):
        """Non-numeric values for numeric settings are rejected."""
        monkeypatch.setenv('STACK_DRIVER_POLL_INTERVAL', 'fast')
        with pytest.raises(ConfigError, match="STACK_DRIVER_POLL_INTERVAL='fast'"):
            load_config()

    def test_cli_overrides_env(self, monkeypatch):
        """CLI overrides win over the environment; None is ignored."""
        monkeypatch.setenv('STACK_DRIVER_MAX_WORKERS', '3')
        config = load_config(max_workers=6, endpoint=None)
        assert config.max_workers == 6
        assert config.endpoint == ''


class TestValidation:
    """Test DriverConfig.validate()."""

    @pytest.mark.parametrize('overrides,message', [
        ({'max_workers': 0}, 'max_workers must be >= 1'),
        ({'poll_interval': 0}, 'poll_interval must be > 0'),
        ({'poll_interval': 5.0, 'poll_max_interval': 1.0}, 'poll_max_interval must be >= poll_interval'),
        ({'operation_timeout': -1}, 'operation_timeout must be > 0'),
        ({'transient_retries': -1}, 'transient_retries must be >= 0'),
        ({'backend': 'cloud'}, "Unknown backend 'cloud'"),
        ({'backend': 'http'}, "backend 'http' requires an endpoint"),
    ])
    def test_invalid(self, overrides, message):
        """Out-of-range values raise ConfigError."""
        with pytest.raises(ConfigError, match=message):
            load_config(**overrides)

    def test_http_with_endpoint(self):
        """The http backend is valid once an endpoint is set."""
        config = load_config(backend='http', endpoint='http://api.local')
        assert config.endpoint == 'http://api.local'

    def test_unknown_override(self):
        """Overrides must name a real setting."""
        with pytest.raises(ConfigError, match='Unknown config setting: colour'):
            DriverConfig().apply_overrides(colour='blue')
