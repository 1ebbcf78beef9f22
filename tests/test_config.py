"""Tests for the configuration system."""

import os
from pathlib import Path
from unittest.mock import patch

from delegated_orchestrator.config import Config, _apply_env_overrides, _apply_toml, load_config


def test_config_defaults():
	"""Config should have sensible defaults."""
	config = Config()
	assert config.config_dir.is_absolute()
	assert config.data_dir.is_absolute()
	assert config.db_path == config.data_dir / "orchestrator.db"
	assert config.log_dir == config.data_dir / "logs"
	assert config.operator_roles == ["super_admin"]
	assert config.queue_max_attempts == 3
	assert not config.is_production


def test_config_env_overrides():
	"""Environment variables should override defaults."""
	config = Config()
	with patch.dict(os.environ, {
		"DELEGATED_ORCHESTRATOR_DATA_DIR": "/tmp/test-data",
		"DELEGATED_ORCHESTRATOR_ENV": "production",
		"DELEGATED_ORCHESTRATOR_OPERATOR_ROLES": "super_admin, ops",
		"DELEGATED_ORCHESTRATOR_CACHE_TTL": "60",
	}):
		config = _apply_env_overrides(config)
		assert config.data_dir == Path("/tmp/test-data")
		# Derived paths should be recomputed
		assert config.db_path == Path("/tmp/test-data/orchestrator.db")
		assert config.is_production
		assert config.operator_roles == ["super_admin", "ops"]
		assert config.cache_ttl_seconds == 60


def test_config_toml_overrides(tmp_path: Path):
	"""config.toml values should apply and recompute derived paths."""
	config = Config(config_dir=tmp_path / "config", data_dir=tmp_path / "data")
	config.config_dir.mkdir(parents=True)
	(config.config_dir / "config.toml").write_text(
		f'data_dir = "{tmp_path / "elsewhere"}"\n'
		"session_ttl_hours = 2\n"
		'operator_roles = ["root"]\n'
		"unknown_key = 1\n"
	)

	config = _apply_toml(config)

	assert config.data_dir == tmp_path / "elsewhere"
	assert config.db_path == tmp_path / "elsewhere" / "orchestrator.db"
	assert config.session_ttl_hours == 2
	assert config.operator_roles == ["root"]
	assert not hasattr(config, "unknown_key")


def test_config_ensure_dirs(tmp_path: Path):
	"""ensure_dirs should create all required directories."""
	config = Config(
		config_dir=tmp_path / "config",
		data_dir=tmp_path / "data",
	)
	assert not config.config_dir.exists()
	assert not config.data_dir.exists()

	config.ensure_dirs()

	assert config.config_dir.exists()
	assert config.data_dir.exists()
	assert config.log_dir.exists()


def test_load_config_creates_dirs(tmp_path: Path):
	"""load_config should create directories."""
	with patch.dict(os.environ, {
		"DELEGATED_ORCHESTRATOR_DATA_DIR": str(tmp_path / "data"),
		"DELEGATED_ORCHESTRATOR_CONFIG_DIR": str(tmp_path / "config"),
	}):
		config = load_config()
		assert config.data_dir.exists()
		assert config.config_dir.exists()
