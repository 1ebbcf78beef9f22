"""Worker records, executor variants and the provider boundary."""

from .base import BaseWorker, LanguageModelProvider, ProviderResponse, WorkerResult
from .fallback import simulate_response
from .registry import WorkerRepository
from .variants import (
	WORKER_TYPES,
	DeveloperWorker,
	ProductOwnerWorker,
	ScrumMasterWorker,
	UnifiedWorker,
	build_worker,
	register_worker_type,
)

__all__ = [
	"BaseWorker",
	"DeveloperWorker",
	"LanguageModelProvider",
	"ProductOwnerWorker",
	"ProviderResponse",
	"ScrumMasterWorker",
	"UnifiedWorker",
	"WORKER_TYPES",
	"WorkerRepository",
	"WorkerResult",
	"build_worker",
	"register_worker_type",
	"simulate_response",
]
