"""Helpers shared by the tool modules."""

import functools
import json
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from ..errors import OrchestratorError, ValidationError
from ..models import Principal, as_local

logger = logging.getLogger(__name__)


def dumps(payload: Any) -> str:
	return json.dumps(payload, indent=2, default=str, ensure_ascii=False)


def guarded(fn: Callable[..., Awaitable[str]]) -> Callable[..., Awaitable[str]]:
	"""Turn OrchestratorErrors raised by a tool into {"success": false, ...} payloads."""

	@functools.wraps(fn)
	async def wrapper(*args, **kwargs) -> str:
		try:
			return await fn(*args, **kwargs)
		except OrchestratorError as e:
			logger.info(f"{fn.__name__} failed: {e.code}: {e.message}")
			return dumps(e.to_dict())

	return wrapper


def principal_from(principal_id: str, role: str = "user") -> Principal:
	if not principal_id or not principal_id.strip():
		raise ValidationError("principal_id is required")
	return Principal(id=principal_id.strip(), role=role or "user")


def split_csv(value: str) -> list[str]:
	return [part.strip() for part in (value or "").split(",") if part.strip()]


def parse_datetime(value: str, field: str) -> Optional[datetime]:
	if not value:
		return None
	try:
		parsed = datetime.fromisoformat(value)
	except ValueError:
		raise ValidationError(f"{field} must be an ISO 8601 timestamp") from None
	return as_local(parsed)


def parse_json_object(value: str, field: str) -> dict:
	if not value:
		return {}
	try:
		data = json.loads(value)
	except json.JSONDecodeError:
		raise ValidationError(f"{field} must be a JSON object") from None
	if not isinstance(data, dict):
		raise ValidationError(f"{field} must be a JSON object")
	return data
