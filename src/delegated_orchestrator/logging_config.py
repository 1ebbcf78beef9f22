"""Centralized logging configuration for delegated-orchestrator."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

ROOT_LOGGER = "delegated_orchestrator"
AUDIT_LOGGER = f"{ROOT_LOGGER}.audit"


def setup_logging(
	level: str | None = None,
	log_dir: str | Path = "data/logs",
) -> logging.Logger:
	"""
	Set up logging with console, file and audit handlers.

	Args:
		level: Log level (DEBUG, INFO, WARNING, ERROR). Defaults to env var or INFO.
		log_dir: Directory for log files

	Returns:
		Configured package logger
	"""
	level = level or os.getenv("LOG_LEVEL", "INFO")
	log_level = getattr(logging, level.upper(), logging.INFO)

	logger = logging.getLogger(ROOT_LOGGER)
	logger.setLevel(log_level)

	# Avoid duplicate handlers
	if logger.handlers:
		return logger

	detailed_formatter = logging.Formatter(
		"%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s",
		datefmt="%Y-%m-%d %H:%M:%S",
	)
	simple_formatter = logging.Formatter(
		"%(asctime)s [%(levelname)s] %(message)s",
		datefmt="%H:%M:%S",
	)

	# stderr keeps stdout free for the MCP stdio transport
	console_handler = logging.StreamHandler(sys.stderr)
	console_handler.setLevel(log_level)
	console_handler.setFormatter(simple_formatter)
	console_handler.addFilter(SensitiveDataFilter())
	logger.addHandler(console_handler)

	log_path = Path(log_dir)
	log_path.mkdir(parents=True, exist_ok=True)

	file_handler = RotatingFileHandler(
		log_path / "orchestrator.log",
		maxBytes=10 * 1024 * 1024,  # 10 MB
		backupCount=5,
	)
	file_handler.setLevel(logging.DEBUG)
	file_handler.setFormatter(detailed_formatter)
	file_handler.addFilter(SensitiveDataFilter())
	logger.addHandler(file_handler)

	# Authorization denials and delegation transitions
	audit_handler = RotatingFileHandler(
		log_path / "audit.log",
		maxBytes=5 * 1024 * 1024,
		backupCount=10,
	)
	audit_handler.setLevel(logging.INFO)
	audit_handler.setFormatter(detailed_formatter)
	logging.getLogger(AUDIT_LOGGER).addHandler(audit_handler)

	return logger


def get_audit_logger() -> logging.Logger:
	"""Logger for authorization and delegation lifecycle events."""
	return logging.getLogger(AUDIT_LOGGER)


class SensitiveDataFilter(logging.Filter):
	"""Flag log records that look like they carry credentials."""

	SENSITIVE_PATTERNS = ("token=", "password", "secret", "api_key", "authorization")

	def filter(self, record: logging.LogRecord) -> bool:
		if isinstance(record.msg, str):
			msg_lower = record.msg.lower()
			if any(pattern in msg_lower for pattern in self.SENSITIVE_PATTERNS):
				record.msg = f"[SENSITIVE] {record.msg}"
		return True
