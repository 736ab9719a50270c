"""Plan data types and the preview printer.

A Plan is the single artifact shared by preview and apply: the printer
renders it, the confirmation gate assesses it and the reconciler executes
it. Steps are stored in dependency order.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import click

from .diff_normalizer import PropertyChange
from .models import ConvergeError, ResourceRef, ResourceSpec


class Action(str, Enum):
    """What a step does to its resource."""

    CREATE = "Create"
    UPDATE = "Update"
    REPLACE = "Replace"
    DELETE = "Delete"
    NOOP = "NoOp"


DESTRUCTIVE_ACTIONS = frozenset({Action.REPLACE, Action.DELETE})


class DriftConflictError(ConvergeError):
    """Raised when a destructive action is not flagged destructive."""

    pass


@dataclass(frozen=True)
class PlanStep:
    """One resource-level action.

    Attributes:
        ref: Target resource.
        action: What the step does.
        reason: Why the planner chose this action.
        destructive: The step removes or recreates a live resource.
        requires: Keys of steps that must succeed first.
        changes: Significant property differences (Update/Replace).
        resource: Declared resource, None for prune/teardown deletes.
        properties: Properties sent to the backend.
        tags: Tags sent to the backend, ownership tags included.
        purge: Delete (or the delete half of a Replace) also purges the
            soft-deleted copy.
    """

    ref: ResourceRef
    action: Action
    reason: str
    destructive: bool = False
    requires: tuple[str, ...] = ()
    changes: tuple[PropertyChange, ...] = ()
    resource: ResourceSpec | None = None
    properties: Mapping[str, Any] = field(default_factory=dict)
    tags: Mapping[str, str] = field(default_factory=dict)
    purge: bool = False

    def __post_init__(self) -> None:
        if self.action in DESTRUCTIVE_ACTIONS and not self.destructive:
            raise DriftConflictError(
                f"{self.action.value} of {self.key} must be flagged destructive"
            )

    @property
    def key(self) -> str:
        return self.ref.key

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource": self.key,
            "action": self.action.value,
            "reason": self.reason,
            "destructive": self.destructive,
            "requires": list(self.requires),
            "changes": [
                {"path": c.path, "before": c.before, "after": c.after} for c in self.changes
            ],
            "purge": self.purge,
        }


@dataclass(frozen=True)
class Plan:
    """Ordered set of steps for one deployment."""

    deployment: str
    steps: tuple[PlanStep, ...] = ()

    def step(self, key: str) -> PlanStep:
        for step in self.steps:
            if step.key == key:
                return step
        raise KeyError(key)

    @property
    def keys(self) -> list[str]:
        return [s.key for s in self.steps]

    @property
    def actions(self) -> list[tuple[Action, str]]:
        return [(s.action, s.key) for s in self.steps]

    @property
    def has_changes(self) -> bool:
        return any(s.action != Action.NOOP for s in self.steps)

    @property
    def destructive_steps(self) -> list[PlanStep]:
        return [s for s in self.steps if s.destructive]

    def summary(self) -> dict[str, int]:
        counts = {action.value: 0 for action in Action}
        for step in self.steps:
            counts[step.action.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "deployment": self.deployment,
            "summary": self.summary(),
            "steps": [s.to_dict() for s in self.steps],
        }


# Symbol and colour per action for the preview printer
_ACTION_STYLE: dict[Action, tuple[str, dict[str, Any]]] = {
    Action.CREATE: ("+", {"fg": "green"}),
    Action.UPDATE: ("~", {"fg": "yellow"}),
    Action.REPLACE: ("-/+", {"fg": "red", "bold": True}),
    Action.DELETE: ("-", {"fg": "red", "bold": True}),
    Action.NOOP: ("=", {"dim": True}),
}


def _format_value(value: Any) -> str:
    if value is None:
        return "(unset)"
    return repr(value)


def format_plan(plan: Plan, show_noop: bool = False) -> str:
    """Render a plan for the terminal.

    Destructive steps are printed in red with a DESTRUCTIVE marker so they
    stand out from the rest of the change set.
    """
    lines: list[str] = [click.style(f"Plan for deployment '{plan.deployment}':", bold=True)]

    for step in plan.steps:
        if step.action == Action.NOOP and not show_noop:
            continue
        symbol, style = _ACTION_STYLE[step.action]
        label = f"  {symbol} {step.action.value:<8} {step.key}"
        if step.destructive:
            label += "  [DESTRUCTIVE]"
        if step.purge:
            label += "  [PURGE]"
        lines.append(click.style(label, **style))
        lines.append(click.style(f"      {step.reason}", dim=True))
        for change in step.changes:
            lines.append(
                f"      {change.path}: {_format_value(change.before)} -> "
                f"{_format_value(change.after)}"
            )

    counts = plan.summary()
    lines.append("")
    lines.append(
        f"Plan: {counts['Create']} to create, {counts['Update']} to update, "
        f"{counts['Replace']} to replace, {counts['Delete']} to delete, "
        f"{counts['NoOp']} unchanged."
    )
    if plan.destructive_steps:
        lines.append(
            click.style(
                f"WARNING: {len(plan.destructive_steps)} destructive step(s) in this plan.",
                fg="red",
                bold=True,
            )
        )
    if not plan.has_changes:
        lines.append(click.style("No changes. Live state matches the declared state.", fg="green"))
    return "\n".join(lines)
