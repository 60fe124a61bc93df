"""
Batch Processor - Fan-out/fan-in execution of parallel agents.

Runs a batch of items concurrently with a concurrency limit. Each item
is processed independently; individual failures do not abort or block
the rest of the batch. Every result carries its own elapsed time so
callers can report batch timing.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from ..errors import OrchestratorError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class BatchStatus(str, Enum):
	"""Status of a batch operation."""
	COMPLETED = "completed"
	PARTIAL_FAILURE = "partial_failure"
	FAILED = "failed"


@dataclass
class BatchItem(Generic[T]):
	"""A single item in a batch."""
	id: str
	data: T


@dataclass
class BatchResult(Generic[R]):
	"""Result of processing a single batch item."""
	item_id: str
	success: bool
	result: Optional[R] = None
	error: Optional[dict[str, Any]] = None
	elapsed_ms: int = 0


@dataclass
class BatchSummary(Generic[R]):
	"""Summary of a completed batch operation. Results keep input order."""
	status: BatchStatus
	total: int
	succeeded: int
	failed: int
	results: list[BatchResult[R]] = field(default_factory=list)
	total_elapsed_ms: int = 0

	@property
	def success_rate(self) -> float:
		"""Fraction of items that succeeded."""
		if self.total == 0:
			return 0.0
		return self.succeeded / self.total

	@property
	def fastest_ms(self) -> int:
		return min((r.elapsed_ms for r in self.results), default=0)

	@property
	def slowest_ms(self) -> int:
		return max((r.elapsed_ms for r in self.results), default=0)

	@property
	def average_ms(self) -> float:
		if not self.results:
			return 0.0
		return round(sum(r.elapsed_ms for r in self.results) / len(self.results), 1)


def _error_detail(exc: Exception) -> dict[str, Any]:
	if isinstance(exc, OrchestratorError):
		return exc.to_dict()
	return {
		"type": type(exc).__name__,
		"message": str(exc),
		"session_id": None,
		"details": {},
		"remediation": "",
	}


class BatchProcessor(Generic[T, R]):
	"""
	Processes batches of items with concurrency control.

	Uses asyncio.Semaphore to limit concurrent processing.
	Individual item failures are captured without aborting the batch.
	"""

	def __init__(self, max_concurrency: int = 5):
		"""
		Initialize batch processor.

		Args:
			max_concurrency: Maximum number of items processed concurrently
		"""
		self.max_concurrency = max_concurrency

	async def execute(
		self,
		items: list[BatchItem[T]],
		handler: Callable[[BatchItem[T]], Awaitable[R]],
		is_success: Optional[Callable[[R], bool]] = None,
	) -> BatchSummary[R]:
		"""
		Execute a batch of items through the handler.

		Args:
			items: List of items to process
			handler: Async function to process each item
			is_success: Classifies a returned value; a handler that returns
				without raising succeeds when this is not given

		Returns:
			BatchSummary with results for all items, in input order
		"""
		if not items:
			return BatchSummary(status=BatchStatus.COMPLETED, total=0, succeeded=0, failed=0)

		semaphore = asyncio.Semaphore(self.max_concurrency)
		batch_started = time.monotonic()

		async def process_item(item: BatchItem[T]) -> BatchResult[R]:
			async with semaphore:
				started = time.monotonic()
				try:
					result_data = await handler(item)
				except Exception as e:
					logger.warning(f"Batch item {item.id} failed: {e}")
					return BatchResult(
						item_id=item.id,
						success=False,
						error=_error_detail(e),
						elapsed_ms=int((time.monotonic() - started) * 1000),
					)
				ok = is_success(result_data) if is_success else True
				return BatchResult(
					item_id=item.id,
					success=ok,
					result=result_data,
					elapsed_ms=int((time.monotonic() - started) * 1000),
				)

		# Fan out
		results = await asyncio.gather(*(process_item(item) for item in items))

		# Fan in
		succeeded = sum(1 for r in results if r.success)
		failed = len(results) - succeeded

		if failed == 0:
			status = BatchStatus.COMPLETED
		elif succeeded == 0:
			status = BatchStatus.FAILED
		else:
			status = BatchStatus.PARTIAL_FAILURE

		return BatchSummary(
			status=status,
			total=len(items),
			succeeded=succeeded,
			failed=failed,
			results=list(results),
			total_elapsed_ms=int((time.monotonic() - batch_started) * 1000),
		)
