"""Risk assessment and operator confirmation before mutation.

Every plan is assessed step by step before the reconciler may touch the
backend:
1. Confidence scoring per step (high/medium/low)
2. High-risk kinds (secret stores, identities, gateways, private zones)
3. Destructive actions (Replace, Delete) and purges always score low

A plan with only non-destructive changes needs a y/N confirmation. A plan with
destructive steps or a purge needs the operator to type DELETE.
``--auto-approve`` skips the prompt for unattended runs.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import click

from .models import ResourceKind, get_kind_schema
from .plan import Action, Plan, PlanStep

logger = logging.getLogger(__name__)

CONFIRMATION_WORD = "DELETE"


class ConfidenceLevel(str, Enum):
    """Confidence that a step is safe.

    HIGH: Additive or no-op. Safe to auto-apply.
    MEDIUM: In-place change to a sensitive kind. Review recommended.
    LOW: Destructive or irreversible. Requires typed confirmation.
    """

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# Kinds whose in-place changes are always worth a second look
MEDIUM_RISK_KINDS: frozenset[ResourceKind] = frozenset(
    {ResourceKind.NETWORK, ResourceKind.STORAGE_ACCOUNT, ResourceKind.SCOPE}
)


@dataclass
class StepRiskAssessment:
    """Risk assessment for a single step."""

    resource: str
    kind: ResourceKind
    action: Action
    confidence: ConfidenceLevel
    requires_typed_confirmation: bool
    risk_reasons: list[str] = field(default_factory=list)


@dataclass
class PlanRiskAssessment:
    """Aggregated risk assessment for a plan."""

    deployment: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    overall_confidence: ConfidenceLevel = ConfidenceLevel.HIGH
    requires_typed_confirmation: bool = False
    step_assessments: list[StepRiskAssessment] = field(default_factory=list)
    high_risk_count: int = 0
    medium_risk_count: int = 0
    low_risk_count: int = 0

    @property
    def total_changes(self) -> int:
        return len(self.step_assessments)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "deployment": self.deployment,
            "timestamp": self.timestamp.isoformat(),
            "overall_confidence": self.overall_confidence.value,
            "requires_typed_confirmation": self.requires_typed_confirmation,
            "total_changes": self.total_changes,
            "high_risk_count": self.high_risk_count,
            "medium_risk_count": self.medium_risk_count,
            "low_risk_count": self.low_risk_count,
            "high_risk_resources": [
                sa.resource
                for sa in self.step_assessments
                if sa.confidence == ConfidenceLevel.LOW
            ][:10],  # Cap for logging
        }


def assess_step(step: PlanStep) -> StepRiskAssessment:
    """Assess the risk of a single plan step."""
    reasons: list[str] = []
    confidence = ConfidenceLevel.HIGH
    typed = False
    schema = get_kind_schema(step.ref.kind)

    if step.destructive:
        confidence = ConfidenceLevel.LOW
        typed = True
        reasons.append(f"Destructive action: {step.action.value}")

    if step.purge:
        confidence = ConfidenceLevel.LOW
        typed = True
        reasons.append("Purge is irreversible")

    if step.action == Action.UPDATE and confidence == ConfidenceLevel.HIGH:
        if schema.high_risk:
            confidence = ConfidenceLevel.MEDIUM
            reasons.append(f"High-risk kind: {step.ref.kind.value}")
        elif step.ref.kind in MEDIUM_RISK_KINDS:
            confidence = ConfidenceLevel.MEDIUM
            reasons.append(f"Medium-risk kind: {step.ref.kind.value}")

    return StepRiskAssessment(
        resource=step.key,
        kind=step.ref.kind,
        action=step.action,
        confidence=confidence,
        requires_typed_confirmation=typed,
        risk_reasons=reasons,
    )


def assess_plan(plan: Plan) -> PlanRiskAssessment:
    """Assess every changing step of a plan."""
    assessment = PlanRiskAssessment(deployment=plan.deployment)

    for step in plan.steps:
        if step.action == Action.NOOP:
            continue
        step_assessment = assess_step(step)
        assessment.step_assessments.append(step_assessment)

        match step_assessment.confidence:
            case ConfidenceLevel.LOW:
                assessment.high_risk_count += 1
            case ConfidenceLevel.MEDIUM:
                assessment.medium_risk_count += 1
            case ConfidenceLevel.HIGH:
                assessment.low_risk_count += 1

        if step_assessment.requires_typed_confirmation:
            assessment.requires_typed_confirmation = True

    if assessment.high_risk_count:
        assessment.overall_confidence = ConfidenceLevel.LOW
    elif assessment.medium_risk_count:
        assessment.overall_confidence = ConfidenceLevel.MEDIUM

    logger.info("Plan risk assessed", extra=assessment.to_dict())
    return assessment


def confirm_plan(
    plan: Plan,
    auto_approve: bool = False,
    confirm: Callable[..., bool] = click.confirm,
    prompt: Callable[..., str] = click.prompt,
) -> bool:
    """Ask the operator to confirm a plan.

    Returns:
        True if the plan may be applied.
    """
    if not plan.has_changes:
        return True

    assessment = assess_plan(plan)
    if auto_approve:
        logger.warning(
            "Plan auto-approved",
            extra={
                "deployment": plan.deployment,
                "destructive_steps": len(plan.destructive_steps),
            },
        )
        return True

    if assessment.requires_typed_confirmation:
        click.echo(
            click.style(
                f"This plan contains {assessment.high_risk_count} destructive or irreversible "
                "step(s).",
                fg="red",
                bold=True,
            )
        )
        answer = prompt(f"Type {CONFIRMATION_WORD} to continue", default="", show_default=False)
        approved = answer.strip() == CONFIRMATION_WORD
    else:
        approved = confirm("Apply these changes?", default=False)

    logger.info(
        "Plan confirmation",
        extra={"deployment": plan.deployment, "approved": approved},
    )
    return approved
