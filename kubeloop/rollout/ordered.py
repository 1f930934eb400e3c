"""Ordered, one-at-a-time planner for StatefulSet Pods.

The planner is a pure function over a snapshot of the StatefulSet's Pods
and claims. With the ``OrderedReady`` policy it returns exactly one next
action, so at most one mutation per StatefulSet is in flight:

1. a terminating Pod blocks everything until it is gone
2. a failed Pod is deleted so it can be recreated
3. missing ordinals below ``replicas`` are created lowest first, claims
   before the Pod, each only after every lower ordinal is Running and Ready
4. ordinals at or above ``replicas`` are deleted highest first
5. Pods on an outdated revision are deleted highest first (down to the
   partition) and recreated by step 3 on the next pass
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum


class ActionType(StrEnum):
    CREATE_CLAIMS = "CreateClaims"
    CREATE_POD = "CreatePod"
    DELETE_POD = "DeletePod"
    WAIT = "Wait"
    NONE = "None"


@dataclass(frozen=True)
class OrdinalState:
    """Observed state of the Pod at one ordinal."""

    ordinal: int
    running_ready: bool = False
    terminating: bool = False
    failed: bool = False
    revision: str = ""


@dataclass(frozen=True)
class StatefulSetView:
    replicas: int
    update_revision: str
    pods: Mapping[int, OrdinalState] = field(default_factory=dict)
    missing_claims: frozenset[int] = frozenset()
    has_claim_templates: bool = False
    parallel: bool = False
    rolling_update: bool = True
    partition: int = 0


@dataclass(frozen=True)
class OrderedAction:
    type: ActionType
    ordinal: int = -1
    reason: str = ""


NO_ACTION = OrderedAction(ActionType.NONE)


def plan_next_action(view: StatefulSetView) -> OrderedAction:
    """Return the single next action for an ``OrderedReady`` StatefulSet."""
    for ordinal in sorted(view.pods):
        state = view.pods[ordinal]
        if state.terminating:
            return OrderedAction(ActionType.WAIT, ordinal, "terminating")

    for ordinal in sorted(view.pods):
        if view.pods[ordinal].failed:
            return OrderedAction(ActionType.DELETE_POD, ordinal, "failed")

    for ordinal in range(view.replicas):
        state = view.pods.get(ordinal)
        if state is None:
            return _create(view, ordinal)
        if not state.running_ready:
            return OrderedAction(ActionType.WAIT, ordinal, "not ready")

    condemned = sorted((o for o in view.pods if o >= view.replicas), reverse=True)
    if condemned:
        return OrderedAction(ActionType.DELETE_POD, condemned[0], "scale down")

    return _next_update(view)


def plan_parallel_actions(view: StatefulSetView) -> list[OrderedAction]:
    """Actions for a ``Parallel`` StatefulSet.

    Scaling ignores the ordering barrier; updates still go one Pod at a
    time, highest ordinal first, once every Pod is Running and Ready.
    """
    actions: list[OrderedAction] = []
    for ordinal in sorted(view.pods):
        if view.pods[ordinal].failed and not view.pods[ordinal].terminating:
            actions.append(OrderedAction(ActionType.DELETE_POD, ordinal, "failed"))

    for ordinal in range(view.replicas):
        if ordinal not in view.pods:
            actions.append(_create(view, ordinal))

    for ordinal in sorted((o for o in view.pods if o >= view.replicas), reverse=True):
        if not view.pods[ordinal].terminating:
            actions.append(OrderedAction(ActionType.DELETE_POD, ordinal, "scale down"))

    if actions:
        return actions
    if any(s.terminating or not s.running_ready for s in view.pods.values()):
        return [OrderedAction(ActionType.WAIT, reason="pods not ready")]
    update = _next_update(view)
    return [] if update.type == ActionType.NONE else [update]


def _create(view: StatefulSetView, ordinal: int) -> OrderedAction:
    if view.has_claim_templates and ordinal in view.missing_claims:
        return OrderedAction(ActionType.CREATE_CLAIMS, ordinal, "claims missing")
    return OrderedAction(ActionType.CREATE_POD, ordinal, "missing")


def _next_update(view: StatefulSetView) -> OrderedAction:
    if not view.rolling_update:
        return NO_ACTION
    for ordinal in range(view.replicas - 1, view.partition - 1, -1):
        state = view.pods.get(ordinal)
        if state is not None and state.revision != view.update_revision:
            return OrderedAction(ActionType.DELETE_POD, ordinal, "update")
    return NO_ACTION
