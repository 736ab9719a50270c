"""Apply engine: executes a confirmed plan against the backend.

Scheduling:
1. A step is dispatched once every step it requires has Succeeded
2. At most APPLY_CONCURRENCY steps run at once
3. A failed step marks its transitive dependents Skipped; independent
   branches keep running
4. Cancellation stops dispatching; in-flight steps finish and everything
   not yet dispatched is Skipped

There is no automatic rollback. Re-running the same plan after a partial
failure converges the remaining steps because every backend call is an
idempotent upsert or delete.

SECURITY: Every step, retries included, runs under one deadline so a hung
backend call cannot block the run indefinitely.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from .backend import Backend, BackendError, ObservedResource, ZoneId
from .config import EngineConfig
from .models import ConvergeError, ResourceKind, ResourceSpec, get_kind_schema
from .plan import Action, Plan, PlanStep

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StepStatus(str, Enum):
    """Lifecycle of a plan step during apply."""

    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"


class ApplyOutcome(str, Enum):
    """Overall result of an apply run."""

    SUCCEEDED = "Succeeded"
    PARTIAL_FAILURE = "PartialFailure"
    CANCELLED = "Cancelled"


class StepTimeoutError(ConvergeError):
    """Raised when a step exceeds its timeout."""

    pass


@dataclass
class StepResult:
    """Result of a single step."""

    key: str
    action: Action
    status: StepStatus = StepStatus.PENDING
    error: str | None = None
    attempts: int = 0
    observed: ObservedResource | None = None
    warnings: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource": self.key,
            "action": self.action.value,
            "status": self.status.value,
            "error": self.error,
            "attempts": self.attempts,
            "warnings": self.warnings,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class ApplyReport:
    """Per-step results and the new observed baseline."""

    deployment: str
    outcome: ApplyOutcome
    results: dict[str, StepResult] = field(default_factory=dict)
    baseline: dict[str, ObservedResource] = field(default_factory=dict)

    def _with_status(self, status: StepStatus) -> list[str]:
        return [k for k, r in self.results.items() if r.status == status]

    @property
    def succeeded(self) -> list[str]:
        return self._with_status(StepStatus.SUCCEEDED)

    @property
    def failed(self) -> list[str]:
        return self._with_status(StepStatus.FAILED)

    @property
    def skipped(self) -> list[str]:
        return self._with_status(StepStatus.SKIPPED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "deployment": self.deployment,
            "outcome": self.outcome.value,
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "skipped": len(self.skipped),
            "steps": [r.to_dict() for r in self.results.values()],
        }


class Reconciler:
    """Executes plans with dependency-aware, bounded concurrency."""

    def __init__(
        self,
        backend: Backend,
        config: EngineConfig | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self._backend = backend
        self._config = config or EngineConfig()
        self._cancel_event = cancel_event or asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Request cooperative cancellation."""
        logger.warning("Cancellation requested; finishing in-flight steps")
        self._cancel_event.set()

    async def apply(self, plan: Plan) -> ApplyReport:
        """Execute every step of a plan."""
        results = {s.key: StepResult(key=s.key, action=s.action) for s in plan.steps}
        steps = {s.key: s for s in plan.steps}
        semaphore = asyncio.Semaphore(self._config.apply_concurrency)
        in_flight: dict[asyncio.Task[None], str] = {}

        logger.info(
            "Apply started",
            extra={"deployment": plan.deployment, "steps": len(plan.steps)},
        )

        while True:
            self._skip_blocked(plan, results)

            if not self.cancelled:
                for step in plan.steps:
                    result = results[step.key]
                    if result.status != StepStatus.PENDING:
                        continue
                    if all(
                        results[r].status == StepStatus.SUCCEEDED
                        for r in step.requires
                        if r in results
                    ):
                        result.status = StepStatus.IN_PROGRESS
                        task = asyncio.create_task(self._run_step(step, result, semaphore))
                        in_flight[task] = step.key

            if not in_flight:
                break

            done, _ = await asyncio.wait(in_flight.keys(), return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                del in_flight[task]
                task.result()

        if self.cancelled:
            for result in results.values():
                if result.status == StepStatus.PENDING:
                    result.status = StepStatus.SKIPPED
                    result.error = "Cancelled before dispatch"

        report = ApplyReport(
            deployment=plan.deployment,
            outcome=self._outcome(results),
            results=results,
            baseline={
                k: r.observed
                for k, r in results.items()
                if r.status == StepStatus.SUCCEEDED
                and r.observed is not None
                and steps[k].action in (Action.CREATE, Action.UPDATE, Action.REPLACE)
            },
        )
        logger.info(
            "Apply finished",
            extra={
                "deployment": plan.deployment,
                "outcome": report.outcome.value,
                "succeeded": len(report.succeeded),
                "failed": len(report.failed),
                "skipped": len(report.skipped),
            },
        )
        return report

    def _outcome(self, results: dict[str, StepResult]) -> ApplyOutcome:
        if self.cancelled:
            return ApplyOutcome.CANCELLED
        if any(r.status in (StepStatus.FAILED, StepStatus.SKIPPED) for r in results.values()):
            return ApplyOutcome.PARTIAL_FAILURE
        return ApplyOutcome.SUCCEEDED

    def _skip_blocked(self, plan: Plan, results: dict[str, StepResult]) -> None:
        """Mark pending steps whose requirements failed or were skipped."""
        changed = True
        while changed:
            changed = False
            for step in plan.steps:
                result = results[step.key]
                if result.status != StepStatus.PENDING:
                    continue
                blocked = [
                    r
                    for r in step.requires
                    if r in results
                    and results[r].status in (StepStatus.FAILED, StepStatus.SKIPPED)
                ]
                if blocked:
                    result.status = StepStatus.SKIPPED
                    result.error = f"Dependency did not succeed: {blocked[0]}"
                    logger.warning(
                        "Step skipped",
                        extra={"resource": step.key, "blocked_by": blocked[0]},
                    )
                    changed = True

    async def _run_step(
        self, step: PlanStep, result: StepResult, semaphore: asyncio.Semaphore
    ) -> None:
        async with semaphore:
            if self.cancelled:
                result.status = StepStatus.SKIPPED
                result.error = "Cancelled before dispatch"
                return

            started = time.monotonic()
            try:
                if step.action == Action.NOOP:
                    result.status = StepStatus.SUCCEEDED
                    return
                result.observed = await self._execute_with_retry(step, result)
                result.status = StepStatus.SUCCEEDED
                logger.info(
                    "Step succeeded",
                    extra={
                        "resource": step.key,
                        "action": step.action.value,
                        "attempts": result.attempts,
                    },
                )
            except (BackendError, StepTimeoutError) as e:
                result.status = StepStatus.FAILED
                result.error = str(e)
                logger.error(
                    "Step failed",
                    extra={
                        "resource": step.key,
                        "action": step.action.value,
                        "attempts": result.attempts,
                        "error": str(e),
                    },
                )
            except Exception as e:
                result.status = StepStatus.FAILED
                result.error = f"Unexpected error: {e}"
                logger.exception(
                    "Step failed unexpectedly",
                    extra={
                        "resource": step.key,
                        "action": step.action.value,
                        "attempts": result.attempts,
                    },
                )
            finally:
                result.duration_seconds = time.monotonic() - started

        if result.status == StepStatus.SUCCEEDED and result.observed is not None:
            result.warnings.extend(await self._await_registration(step, result.observed))

    async def _execute_with_retry(
        self, step: PlanStep, result: StepResult
    ) -> ObservedResource | None:
        """Run a step with transient retries under one overall deadline.

        The step timeout covers every attempt and backoff wait together, so a
        step never runs longer than ``step_timeout_seconds``.

        Raises:
            BackendError: On a permanent error or when retries are exhausted.
            StepTimeoutError: If the deadline passes before an attempt succeeds.
        """
        max_attempts = self._config.max_attempts
        timeout = self._config.step_timeout_seconds
        deadline = time.monotonic() + timeout

        def timed_out() -> StepTimeoutError:
            return StepTimeoutError(
                f"{step.action.value} of {step.key} timed out after {timeout}s"
            )

        for attempt in range(1, max_attempts + 1):
            result.attempts = attempt
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise timed_out()
            try:
                return await asyncio.wait_for(self._execute(step), timeout=remaining)
            except TimeoutError as e:
                raise timed_out() from e
            except BackendError as e:
                if not e.transient or attempt >= max_attempts:
                    raise

                # Exponential backoff with jitter
                backoff = self._config.retry_backoff_base_seconds * (2 ** (attempt - 1))
                jitter = random.uniform(0, backoff * 0.2)
                wait_time = min(backoff + jitter, max(deadline - time.monotonic(), 0.0))
                logger.warning(
                    "Transient backend error, retrying",
                    extra={
                        "resource": step.key,
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "wait_seconds": wait_time,
                        "error": str(e),
                    },
                )
                await asyncio.sleep(wait_time)

        # Loop always returns or raises
        raise AssertionError("retry loop exited without a result")

    async def _call(self, fn: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(fn, *args)

    async def _execute(self, step: PlanStep) -> ObservedResource | None:
        """Perform a step's backend calls, including post-apply hooks."""
        backend = self._backend
        ref = step.ref

        if step.action == Action.DELETE:
            if step.resource is not None:
                await self._deregister(step.resource)
            await self._call(backend.delete, ref, step.purge)
            return None

        if step.action == Action.REPLACE:
            await self._check_replaceable(step)
            await self._call(backend.delete, ref, step.purge)
            observed = await self._call(backend.create, ref, step.properties, step.tags)
        elif step.action == Action.CREATE:
            observed = await self._call(backend.create, ref, step.properties, step.tags)
        else:
            observed = await self._call(backend.update, ref, step.properties, step.tags)

        if step.resource is not None:
            await self._post_apply(step.resource, observed)
        return observed

    async def _check_replaceable(self, step: PlanStep) -> None:
        """Refuse a Replace whose deleted copy would keep the name reserved."""
        schema = get_kind_schema(step.ref.kind)
        if not (schema.soft_delete and schema.globally_unique):
            return
        live = await self._call(self._backend.get, step.ref)
        if live is not None and (live.purge_protected or not step.purge):
            raise BackendError(
                f"Replacing {step.key} would leave its name held by a soft-deleted copy; "
                "revert the immutable change or declare the resource under a new name"
            )

    async def _post_apply(self, resource: ResourceSpec, observed: ObservedResource) -> None:
        """Link zones to their networks; register endpoints in their zones."""
        if resource.kind == ResourceKind.PRIVATE_ZONE:
            zone = ZoneId.from_ref(resource.ref)
            for network in resource.linked_networks():
                await self._call(self._backend.link_zone, zone, network)
                logger.debug("Zone linked", extra={"zone": zone.name, "network": network})

        if resource.kind == ResourceKind.ENDPOINT:
            address = observed.private_address
            if not address:
                raise BackendError(
                    f"{resource.key} has no private address yet", transient=True
                )
            record = resource.record_name()
            for zone_ref in resource.joined_zone_refs():
                zone = ZoneId.from_ref(zone_ref)
                await self._call(self._backend.upsert_record, zone, record, address)
                logger.info(
                    "Endpoint registered",
                    extra={"record": record, "zone": zone.name, "address": address},
                )

    async def _deregister(self, resource: ResourceSpec) -> None:
        if resource.kind != ResourceKind.ENDPOINT:
            return
        record = resource.record_name()
        for zone_ref in resource.joined_zone_refs():
            await self._call(self._backend.delete_record, ZoneId.from_ref(zone_ref), record)

    async def _await_registration(
        self, step: PlanStep, observed: ObservedResource
    ) -> list[str]:
        """Wait (bounded) until an endpoint's records are visible.

        Returns warnings for records that did not become visible in time.
        """
        resource = step.resource
        if resource is None or resource.kind != ResourceKind.ENDPOINT:
            return []
        address = observed.private_address
        record = resource.record_name()
        pending = {ZoneId.from_ref(z) for z in resource.joined_zone_refs()}
        deadline = time.monotonic() + self._config.registration_propagation_seconds

        while pending:
            try:
                zones = {z.zone: z for z in await self._call(self._backend.list_zones)}
            except BackendError as e:
                logger.debug("Registration check failed", extra={"error": str(e)})
                zones = {}
            pending = {
                zone
                for zone in pending
                if zone not in zones or address not in zones[zone].lookup(record)
            }
            if not pending or time.monotonic() >= deadline:
                break
            await asyncio.sleep(self._config.registration_poll_interval_seconds)

        warnings = [
            f"Record '{record}' not yet visible in zone {zone.name} after "
            f"{self._config.registration_propagation_seconds}s"
            for zone in sorted(pending)
        ]
        for warning in warnings:
            logger.warning(warning, extra={"resource": step.key})
        return warnings
