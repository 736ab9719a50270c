"""Cleanup/teardown of declared resources.

Teardown builds a delete plan in reverse dependency order and runs it through
the same scheduler as apply, so a resource is only deleted after everything
that depends on it is gone.

Modes:
- SoftRemove (default): delete; soft-delete kinds stay recoverable for the
  retention window and keep their name reserved
- Purge: also purge soft-deleted copies. Irreversible, so it must be
  confirmed explicitly. Resources with purge protection are never purged;
  they are soft-removed and the plan says so
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum

from .backend import Backend
from .config import EngineConfig
from .graph import DependencyGraph
from .models import ConvergeError
from .plan import Action, Plan, PlanStep
from .planner import LiveSnapshot
from .reconciler import ApplyReport, Reconciler

logger = logging.getLogger(__name__)


class TeardownMode(str, Enum):
    """How far teardown goes."""

    SOFT_REMOVE = "SoftRemove"
    PURGE = "Purge"


class PurgeNotConfirmedError(ConvergeError):
    """Raised when a purge is requested without explicit confirmation."""

    pass


def plan_teardown(
    graph: DependencyGraph,
    snapshot: LiveSnapshot,
    deployment: str,
    mode: TeardownMode = TeardownMode.SOFT_REMOVE,
    purge_confirmed: bool = False,
) -> Plan:
    """Build the delete plan for every managed resource.

    Existing (unmanaged) references are never part of the plan.

    Raises:
        PurgeNotConfirmedError: If Purge mode is requested without confirmation.
    """
    if mode == TeardownMode.PURGE and not purge_confirmed:
        raise PurgeNotConfirmedError(
            "Purge is irreversible and must be confirmed explicitly (--purge)"
        )

    managed = set(graph.managed_keys())
    steps: list[PlanStep] = []

    for key in graph.reverse_order():
        node = graph.nodes[key]
        resource = node.resource
        assert resource is not None
        observed = snapshot.get(key)
        requires = tuple(d for d in graph.dependents(key) if d in managed)

        purge_eligible = mode == TeardownMode.PURGE and resource.schema.soft_delete
        protected = bool(resource.properties.get("enablePurgeProtection")) or bool(
            observed is not None and observed.purge_protected
        )

        if observed is None:
            steps.append(
                PlanStep(resource.ref, Action.NOOP, "Already absent", requires=requires)
            )
            continue

        if observed.soft_deleted:
            if purge_eligible and not protected:
                steps.append(
                    PlanStep(
                        resource.ref,
                        Action.DELETE,
                        "Soft-deleted; purging",
                        destructive=True,
                        requires=requires,
                        resource=resource,
                        purge=True,
                    )
                )
            else:
                reason = "Already soft-deleted"
                if purge_eligible:
                    reason += "; purge protection enabled, left for the retention period"
                steps.append(PlanStep(resource.ref, Action.NOOP, reason, requires=requires))
            continue

        reason = "Declared resource removed by teardown"
        purge = purge_eligible and not protected
        if purge_eligible and protected:
            reason += "; purge protection enabled, soft-remove only"
            logger.warning(
                "Purge skipped for protected resource", extra={"resource": key}
            )
        steps.append(
            PlanStep(
                resource.ref,
                Action.DELETE,
                reason,
                destructive=True,
                requires=requires,
                resource=resource,
                purge=purge,
            )
        )

    plan = Plan(deployment=deployment, steps=tuple(steps))
    logger.info(
        "Teardown planned",
        extra={"deployment": deployment, "mode": mode.value, **plan.summary()},
    )
    return plan


class TeardownOrchestrator:
    """Runs teardown plans through the shared reconciler."""

    def __init__(
        self,
        backend: Backend,
        config: EngineConfig | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self._reconciler = Reconciler(backend, config, cancel_event)

    @property
    def reconciler(self) -> Reconciler:
        return self._reconciler

    async def execute(self, plan: Plan) -> ApplyReport:
        return await self._reconciler.apply(plan)
