"""
Settlement Saga - ordered steps with compensations run in reverse on failure.

Each step's intent and outcome goes to the structured log under one saga id,
so an interrupted settlement can be reconstructed from the log alone. Nothing
here retries: a timed-out step is treated as "unknown state", compensated
where possible, and surfaced.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from structlog import get_logger

from slotledger.exceptions import PartialSettlementFailureError
from slotledger.observability.logging import log_context
from slotledger.observability.metrics import metrics
from slotledger.observability.tracing import trace_operation

logger = get_logger(__name__)

TIMEOUT_ERRORS: tuple[type[BaseException], ...] = (
    asyncio.TimeoutError,
    TimeoutError,
    OperationalError,
    PoolTimeoutError,
)


@dataclass(frozen=True)
class SagaStep:
    """
    One settlement step.

    ``compensate`` receives whatever ``action`` returned. Steps without a
    compensation (the last step, or pure reads) pass None.
    """

    name: str
    action: Callable[[], Awaitable[Any]]
    compensate: Callable[[Any], Awaitable[None]] | None = None


class Saga:
    """Runs steps in order; compensates completed steps in reverse on failure."""

    def __init__(
        self,
        operation: str,
        *,
        savepoint: Callable[[], AbstractAsyncContextManager[Any]] | None = None,
        saga_id: UUID | None = None,
        **context: Any,
    ) -> None:
        self.operation = operation
        self.savepoint = savepoint
        self.saga_id = saga_id or uuid4()
        self.context = context
        self.completed: list[tuple[SagaStep, Any]] = []
        self.results: dict[str, Any] = {}

    async def _call(self, fn: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """Run one action or compensation, inside a savepoint when one is configured."""
        if self.savepoint is None:
            return await fn(*args)
        async with self.savepoint():
            return await fn(*args)

    async def run(self, steps: Sequence[SagaStep]) -> dict[str, Any]:
        """
        Execute ``steps``; returns each step's result keyed by step name.

        Raises:
            The original error: A step failed before any step completed
            PartialSettlementFailureError: A step failed after others completed
        """
        with (
            log_context(saga_id=str(self.saga_id), operation=self.operation, **self.context),
            trace_operation(f"saga.{self.operation}", saga_id=self.saga_id, **self.context),
        ):
            for step in steps:
                logger.info("saga_step_started", step=step.name)
                try:
                    result = await self._call(step.action)
                except Exception as exc:
                    self._log_step_failure(step.name, exc)
                    if not self.completed:
                        raise
                    await self._compensate(step.name, exc)
                self.completed.append((step, result))
                self.results[step.name] = result
                logger.info("saga_step_completed", step=step.name)
        return self.results

    def _log_step_failure(self, step: str, exc: Exception) -> None:
        if isinstance(exc, TIMEOUT_ERRORS):
            logger.error(
                "saga_step_outcome_unknown",
                step=step,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        else:
            logger.warning(
                "saga_step_failed",
                step=step,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def _compensate(self, failed_step: str, original: Exception) -> None:
        """Undo completed steps, newest first, then raise PartialSettlementFailureError."""
        errors: list[tuple[str, BaseException]] = []
        for step, result in reversed(self.completed):
            if step.compensate is None:
                continue
            logger.info("saga_step_compensating", step=step.name, failed_step=failed_step)
            try:
                await self._call(step.compensate, result)
            except Exception as comp_exc:
                errors.append((step.name, comp_exc))
                metrics.record_compensation(step.name, success=False)
                logger.critical(
                    "settlement_compensation_failed",
                    step=step.name,
                    failed_step=failed_step,
                    original_error=str(original),
                    error=str(comp_exc),
                    error_type=type(comp_exc).__name__,
                )
            else:
                metrics.record_compensation(step.name, success=True)
                logger.info("saga_step_compensated", step=step.name)

        if errors:
            metrics.reconciliation_required_total.labels(operation=self.operation).inc()
        raise PartialSettlementFailureError(failed_step, original, errors) from original
