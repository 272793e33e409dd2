"""Plan execution with bounded concurrency and failure containment.

Stages run strictly in order with a barrier between them. Within a stage
every entry is dispatched concurrently through a bounded worker pool: the
provider call is blocking and runs on a worker thread, awaited with a
per-operation deadline.

FAILURE CONTAINMENT:
- Transient errors (provider-classified) are retried with exponential
  backoff and jitter up to EngineConfig.max_attempts
- Any other error fails that resource immediately
- If a stage has a failure, its remaining in-flight operations finish but
  no later stage starts; their entries are reported as skipped
- Nothing is rolled back: succeeded resources stay applied and recorded

STATE:
Each successful operation writes its StateRecord immediately, so a re-run
after a partial failure re-diffs against accurate partial progress.
"""

from __future__ import annotations

import asyncio
import logging
import random
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from typing import Any, Protocol

from .config import RETRY_JITTER_RATIO, EngineConfig
from .differ import merge_ignored, resolve_refs
from .errors import (
    FatalExecutionError,
    OperationTimeoutError,
    ResourceGoneError,
    UnknownKindError,
)
from .models import (
    Action,
    ApplyReport,
    DiffEntry,
    ExecutionResult,
    ExecutionStatus,
    Plan,
    Resource,
    ResourceKey,
    ResourceRef,
    StateRecord,
)
from .paths import MISSING, get_path
from .providers import (
    Change,
    ErrorClass,
    Provider,
    ProviderRegistry,
    ProviderResult,
    default_classify,
)
from .state import StateStore, state_session

logger = logging.getLogger(__name__)

SKIPPED_AFTER_FAILURE = "not started: an earlier stage failed"
SKIPPED_AFTER_CANCEL = "not started: apply was cancelled"


class CancelSignal(Protocol):
    """Anything with is_set(): threading.Event, asyncio.Event, ..."""

    def is_set(self) -> bool: ...


def dependencies_of(resource: Resource) -> list[ResourceKey]:
    """Keys a resource depends on: references first, then depends_on."""
    keys: list[ResourceKey] = []
    for ref in resource.references():
        if ref.key not in keys:
            keys.append(ref.key)
    for key in resource.depends_on:
        if key not in keys:
            keys.append(key)
    return keys


class Executor:
    """Runs a Plan against providers, recording state per resource."""

    def __init__(
        self,
        state: StateStore,
        providers: ProviderRegistry,
        config: EngineConfig | None = None,
    ) -> None:
        """Initialize executor.

        Args:
            state: Open state store; the only shared mutable resource.
            providers: Provider registry used for every entry.
            config: Engine configuration (defaults if omitted).
        """
        self._state = state
        self._providers = providers
        self._config = config or EngineConfig()

    async def apply(self, plan: Plan, cancel: CancelSignal | None = None) -> ApplyReport:
        """Execute a plan.

        Args:
            plan: Plan to execute. Not mutated.
            cancel: Optional signal checked before each stage and each retry.

        Returns:
            ApplyReport listing every entry in plan order.

        Raises:
            UnknownKindError: Before any side effect, if a kind has no provider.
        """
        missing = self._providers.missing_kinds([entry.kind for entry in plan.entries()])
        if missing:
            raise UnknownKindError(f"No provider registered for kinds: {missing}")

        report = ApplyReport()
        results: list[ExecutionResult] = []
        skip_reason: str | None = None

        logger.info(
            "Starting apply",
            extra={"stages": len(plan.stages), **plan.summary()},
        )

        pool = ThreadPoolExecutor(
            max_workers=self._config.max_workers, thread_name_prefix="provisioner"
        )
        semaphore = asyncio.Semaphore(self._config.max_workers)

        try:
            for stage in plan.stages:
                if skip_reason is None and cancel is not None and cancel.is_set():
                    logger.warning(
                        "Apply cancelled before stage",
                        extra={"stage": stage.index},
                    )
                    report.cancelled = True
                    skip_reason = SKIPPED_AFTER_CANCEL

                if skip_reason is not None:
                    results.extend(
                        self._skipped(entry, stage.index, skip_reason) for entry in stage.entries
                    )
                    continue

                logger.info(
                    "Starting stage",
                    extra={"stage": stage.index, "operations": len(stage.entries)},
                )

                # Barrier: every dispatched operation returns before the next stage
                outcomes = await asyncio.gather(
                    *(
                        self._run_entry(entry, stage.index, pool, semaphore, cancel, report)
                        for entry in stage.entries
                    )
                )
                results.extend(outcomes)

                failed = [r for r in outcomes if r.status == ExecutionStatus.FAILED]
                if failed:
                    logger.error(
                        "Stage failed, halting apply",
                        extra={
                            "stage": stage.index,
                            "failed": [str(r.key) for r in failed],
                        },
                    )
                    skip_reason = SKIPPED_AFTER_FAILURE
        finally:
            # Timed-out provider calls may still occupy threads; do not wait for them
            pool.shutdown(wait=False, cancel_futures=True)

        report.results = results
        report.finished_at = datetime.now(UTC)

        logger.info(
            "Apply finished",
            extra={
                "success": report.success,
                "cancelled": report.cancelled,
                "duration_seconds": report.duration_seconds,
                **report.summary(),
            },
        )
        return report

    def _skipped(self, entry: DiffEntry, stage: int, reason: str) -> ExecutionResult:
        return ExecutionResult(
            key=entry.key,
            action=entry.action,
            status=ExecutionStatus.SKIPPED,
            stage=stage,
            replacement=entry.replacement,
            error=reason,
        )

    async def _run_entry(
        self,
        entry: DiffEntry,
        stage: int,
        pool: ThreadPoolExecutor,
        semaphore: asyncio.Semaphore,
        cancel: CancelSignal | None,
        report: ApplyReport,
    ) -> ExecutionResult:
        """Run one entry with retries; never raises."""

        def outcome(status: ExecutionStatus, attempts: int, error: str | None = None) -> ExecutionResult:
            return ExecutionResult(
                key=entry.key,
                action=entry.action,
                status=status,
                stage=stage,
                attempts=attempts,
                replacement=entry.replacement,
                error=error,
            )

        log_extra = {"resource": str(entry.key), "action": entry.action.value, "stage": stage}

        async with semaphore:
            try:
                provider = self._providers.get(entry.kind)
                change = self._prepare(entry)
            except Exception as e:
                logger.error("Could not prepare change", extra={**log_extra, "error": str(e)})
                return outcome(ExecutionStatus.FAILED, 0, str(e))

            attempt = 0
            while True:
                attempt += 1
                try:
                    result = await self._execute_with_timeout(provider, change, pool)
                    break
                except ResourceGoneError as e:
                    if entry.action == Action.DELETE:
                        report.drift.append(
                            f"{entry.key}: already absent provider-side before delete ({e})"
                        )
                        logger.warning(
                            "Resource already gone, treating delete as done",
                            extra={**log_extra, "error": str(e)},
                        )
                        result = ProviderResult()
                        break
                    error: Exception = e
                except Exception as e:
                    # Provider code is external; any error is contained to this resource
                    error = e

                error_class = self._classify(provider, error)
                if error_class == ErrorClass.TRANSIENT and attempt < self._config.max_attempts:
                    if cancel is not None and cancel.is_set():
                        logger.warning(
                            "Apply cancelled, not retrying",
                            extra={**log_extra, "attempt": attempt, "error": str(error)},
                        )
                        return outcome(
                            ExecutionStatus.FAILED,
                            attempt,
                            f"cancelled before retry: {error}",
                        )

                    backoff = self._config.backoff_seconds(attempt)
                    wait_time = backoff + random.uniform(0, backoff * RETRY_JITTER_RATIO)
                    logger.warning(
                        "Transient provider error, retrying",
                        extra={
                            **log_extra,
                            "attempt": attempt,
                            "max_attempts": self._config.max_attempts,
                            "wait_seconds": wait_time,
                            "error": str(error),
                        },
                    )
                    await asyncio.sleep(wait_time)
                    continue

                logger.error(
                    "Provider operation failed",
                    extra={
                        **log_extra,
                        "attempt": attempt,
                        "error_class": error_class.value,
                        "error": str(error),
                        "error_type": type(error).__name__,
                    },
                )
                return outcome(
                    ExecutionStatus.FAILED, attempt, f"{type(error).__name__}: {error}"
                )

            try:
                self._record(entry, change, result)
            except Exception as e:
                report.drift.append(
                    f"{entry.key}: provider {entry.action.value} succeeded but the state "
                    f"write failed ({e}); recorded state is stale"
                )
                logger.error("State write failed after apply", extra={**log_extra, "error": str(e)})
                return outcome(ExecutionStatus.FAILED, attempt, f"state write failed: {e}")

            logger.info("Change applied", extra={**log_extra, "attempts": attempt})
            return outcome(ExecutionStatus.SUCCEEDED, attempt)

    async def _execute_with_timeout(
        self,
        provider: Provider,
        change: Change,
        pool: ThreadPoolExecutor,
    ) -> ProviderResult:
        """Run provider.execute on a worker thread with a deadline.

        The worker thread is not interrupted on timeout; the call's result
        is discarded.

        Raises:
            OperationTimeoutError: If the deadline passes.
        """
        loop = asyncio.get_running_loop()
        timeout = self._config.operation_timeout_seconds
        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(pool, provider.execute, change),
                timeout=timeout,
            )
        except TimeoutError as e:
            raise OperationTimeoutError(
                f"{change.action.value} {change.key} exceeded {timeout}s"
            ) from e

        if not isinstance(result, ProviderResult):
            raise FatalExecutionError(
                f"Provider returned {type(result).__name__}, expected ProviderResult"
            )
        return result

    def _classify(self, provider: Provider, error: Exception) -> ErrorClass:
        classify = getattr(provider, "classify", None)
        if classify is None:
            return default_classify(error)
        try:
            return ErrorClass(classify(error))
        except Exception as e:
            logger.error(
                "Provider classify() failed, treating error as fatal",
                extra={"error": str(e), "original_error": str(error)},
            )
            return ErrorClass.FATAL

    def _prepare(self, entry: DiffEntry) -> Change:
        """Resolve the entry's references against current state."""
        if entry.action == Action.DELETE:
            return Change(entry=entry)
        if entry.desired is None:
            raise FatalExecutionError(f"{entry.action.value} {entry.key} carries no desired resource")

        def lookup(ref: ResourceRef) -> Any:
            record = self._state.get(ref.key)
            if record is None:
                raise FatalExecutionError(
                    f"{entry.key} references {ref.key}, which has no recorded state"
                )
            if ref.targets_handle:
                if record.handle is None:
                    raise FatalExecutionError(f"{ref.key} has no provider handle")
                return record.handle
            found = get_path(record.attributes, ref.attribute_path)
            if found is MISSING:
                found = get_path(record.computed, ref.attribute_path)
            if found is MISSING:
                raise FatalExecutionError(
                    f"{entry.key} references {ref}, which the provider did not report"
                )
            return found

        attributes = resolve_refs(entry.desired.attributes, lookup)
        if entry.prior is not None:
            attributes = merge_ignored(
                attributes, entry.prior.attributes, entry.desired.lifecycle.ignore_changes
            )
        return Change(entry=entry, attributes=attributes)

    def _record(self, entry: DiffEntry, change: Change, result: ProviderResult) -> None:
        """Write the outcome of one operation to the state store."""
        if entry.action == Action.DELETE:
            current = self._state.get(entry.key)
            if (
                entry.replacement
                and current is not None
                and entry.prior is not None
                and current.handle != entry.prior.handle
            ):
                # create_before_destroy: the record already describes the new instance
                logger.debug(
                    "Keeping record of replacement instance",
                    extra={"resource": str(entry.key), "handle": current.handle},
                )
                return
            self._state.delete(entry.key)
            return

        record = StateRecord(
            key=entry.key,
            attributes=change.attributes,
            computed=result.attributes,
            handle=result.handle,
            dependencies=dependencies_of(entry.desired) if entry.desired is not None else [],
        )
        self._state.put(entry.key, record)


def apply_plan(
    plan: Plan,
    state: StateStore,
    providers: ProviderRegistry,
    config: EngineConfig | None = None,
    cancel: CancelSignal | None = None,
) -> ApplyReport:
    """Synchronous convenience wrapper around Executor.apply().

    Opens the state store for the run and closes it afterwards.
    """
    executor = Executor(state, providers, config)
    with state_session(state):
        return asyncio.run(executor.apply(plan, cancel))
