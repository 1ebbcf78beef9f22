"""Configuration system using platformdirs for cross-platform paths."""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

import platformdirs
from dotenv import load_dotenv

APP_NAME = "delegated-orchestrator"
APP_AUTHOR = "delegated-orchestrator"
ENV_PREFIX = "DELEGATED_ORCHESTRATOR_"


@dataclass
class Config:
	"""Central configuration with XDG/platform conventions."""

	config_dir: Path = field(default_factory=lambda: Path(platformdirs.user_config_dir(APP_NAME)))
	data_dir: Path = field(default_factory=lambda: Path(platformdirs.user_data_dir(APP_NAME)))

	# Derived paths
	db_path: Path = field(init=False)
	log_dir: Path = field(init=False)

	# Runtime behaviour
	environment: str = "development"
	log_level: str = "INFO"
	operator_roles: list[str] = field(default_factory=lambda: ["super_admin"])

	# Context cache
	cache_ttl_seconds: int = 300
	cache_check_period: int = 60

	# Sessions
	session_ttl_hours: int = 24

	# Task queue
	queue_max_attempts: int = 3
	queue_backoff_seconds: float = 5.0
	queue_keep_completed: int = 100
	queue_keep_failed: int = 200
	queue_concurrency: int = 1
	queue_poll_interval: float = 1.0

	# Recurring sweeps (expired delegations/sessions, queue cleanup)
	maintenance_interval: int = 3600

	def __post_init__(self) -> None:
		self.db_path = self.data_dir / "orchestrator.db"
		self.log_dir = self.data_dir / "logs"

	@property
	def is_production(self) -> bool:
		return self.environment.lower() == "production"

	def ensure_dirs(self) -> None:
		"""Create all required directories."""
		self.config_dir.mkdir(parents=True, exist_ok=True)
		self.data_dir.mkdir(parents=True, exist_ok=True)
		self.log_dir.mkdir(parents=True, exist_ok=True)


PATH_FIELDS = {"config_dir", "data_dir"}
INT_FIELDS = {
	"cache_ttl_seconds", "cache_check_period", "session_ttl_hours",
	"queue_max_attempts", "queue_keep_completed", "queue_keep_failed",
	"queue_concurrency", "maintenance_interval",
}
FLOAT_FIELDS = {"queue_backoff_seconds", "queue_poll_interval"}


def _coerce(attr: str, raw: str):
	"""Convert an environment string to the field's type."""
	if attr in PATH_FIELDS:
		return Path(os.path.expanduser(raw))
	if attr in INT_FIELDS:
		return int(raw)
	if attr in FLOAT_FIELDS:
		return float(raw)
	if attr == "operator_roles":
		return [r.strip() for r in raw.split(",") if r.strip()]
	return raw


def _apply_env_overrides(config: Config) -> Config:
	"""Apply DELEGATED_ORCHESTRATOR_* environment variable overrides."""
	env_map = {
		f"{ENV_PREFIX}CONFIG_DIR": "config_dir",
		f"{ENV_PREFIX}DATA_DIR": "data_dir",
		f"{ENV_PREFIX}ENV": "environment",
		f"{ENV_PREFIX}LOG_LEVEL": "log_level",
		f"{ENV_PREFIX}OPERATOR_ROLES": "operator_roles",
		f"{ENV_PREFIX}CACHE_TTL": "cache_ttl_seconds",
		f"{ENV_PREFIX}SESSION_TTL_HOURS": "session_ttl_hours",
		f"{ENV_PREFIX}QUEUE_CONCURRENCY": "queue_concurrency",
		f"{ENV_PREFIX}MAINTENANCE_INTERVAL": "maintenance_interval",
	}
	for env_key, attr in env_map.items():
		val = os.getenv(env_key)
		if val:
			setattr(config, attr, _coerce(attr, val))
	# Recompute derived paths after overrides
	config.__post_init__()
	return config


def _apply_toml(config: Config) -> Config:
	"""Apply config.toml overrides if file exists."""
	toml_path = config.config_dir / "config.toml"
	if not toml_path.exists():
		return config

	with open(toml_path, "rb") as f:
		data = tomllib.load(f)

	for key, val in data.items():
		if hasattr(config, key):
			if key in PATH_FIELDS:
				setattr(config, key, Path(os.path.expanduser(val)))
			else:
				setattr(config, key, val)

	# Recompute derived paths after toml overrides
	config.__post_init__()
	return config


def load_config() -> Config:
	"""Load config with precedence: env vars > config.toml > defaults."""
	load_dotenv()
	config = Config()
	config = _apply_toml(config)
	config = _apply_env_overrides(config)
	config.ensure_dirs()
	return config


# Singleton
_config: Config | None = None


def get_config() -> Config:
	"""Get or create the global config instance."""
	global _config
	if _config is None:
		_config = load_config()
	return _config
