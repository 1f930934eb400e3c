"""Surge/unavailable step function for Deployment rollouts.

Each call looks at the current replica counts and returns the next set of
``spec.replicas`` targets for the new and old ReplicaSets. Repeated calls,
interleaved with Pods becoming ready, converge to ``new == desired`` and
``old == 0`` while keeping at every step:

    total Pods     <= desired + max_surge
    available Pods >= desired - max_unavailable
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class ReplicaSetState:
    """What the step function needs to know about one ReplicaSet.

    ``replicas`` is the current ``spec.replicas``; ``pods`` counts its
    non-terminating Pods; ``available`` counts Pods that passed the
    readiness gate.
    """

    name: str
    replicas: int
    available: int = 0
    pods: int = 0

    @property
    def size(self) -> int:
        return max(self.replicas, self.pods)


@dataclass(frozen=True)
class RollingStep:
    new_replicas: int
    old_replicas: dict[str, int] = field(default_factory=dict)
    scaled_up: int = 0
    scaled_down: int = 0

    @property
    def noop(self) -> bool:
        return self.scaled_up == 0 and self.scaled_down == 0


def plan_rolling_step(
    desired: int,
    max_surge: int,
    max_unavailable: int,
    new: ReplicaSetState,
    old: list[ReplicaSetState],
) -> RollingStep:
    """Compute the next rolling-update step.

    *old* should be ordered oldest first; scale-down drains it in that
    order. *max_surge* and *max_unavailable* are absolute counts (see
    ``DeploymentStrategy.resolve``).
    """
    targets = {rs.name: rs.replicas for rs in old}
    new_replicas = new.replicas

    # Scale up the new ReplicaSet within the surge budget
    scaled_up = 0
    trimmed = 0
    if new_replicas > desired:
        trimmed = new_replicas - desired
        new_replicas = desired
    else:
        total = new.size + sum(rs.size for rs in old)
        allowed = desired + max_surge - total
        scale_up = min(allowed, desired - new_replicas)
        if scale_up > 0:
            new_replicas += scale_up
            scaled_up = scale_up

    # Scale down old ReplicaSets within the availability budget
    min_available = desired - max_unavailable
    all_replicas = new_replicas + sum(rs.replicas for rs in old)
    new_unavailable = max(0, new_replicas - new.available)
    max_scaled_down = all_replicas - min_available - new_unavailable

    scaled_down = 0
    if max_scaled_down > 0:
        # Unhealthy old Pods cost no availability, remove them first
        for rs in old:
            if scaled_down >= max_scaled_down:
                break
            unhealthy = max(0, targets[rs.name] - rs.available)
            cleanup = min(unhealthy, max_scaled_down - scaled_down)
            if cleanup > 0:
                targets[rs.name] -= cleanup
                scaled_down += cleanup

        available_total = new.available + sum(min(rs.available, targets[rs.name]) for rs in old)
        budget = min(available_total - min_available, max_scaled_down - scaled_down)
        for rs in old:
            if budget <= 0:
                break
            step = min(targets[rs.name], budget)
            if step > 0:
                targets[rs.name] -= step
                scaled_down += step
                budget -= step

    return RollingStep(
        new_replicas=new_replicas,
        old_replicas=targets,
        scaled_up=scaled_up,
        scaled_down=scaled_down + trimmed,
    )


def plan_recreate_step(desired: int, new: ReplicaSetState, old: list[ReplicaSetState]) -> RollingStep:
    """Recreate strategy: drain every old Pod before the new ReplicaSet grows."""
    targets = {rs.name: 0 for rs in old}
    scaled_down = sum(rs.replicas for rs in old)
    if any(rs.replicas > 0 or rs.pods > 0 for rs in old):
        return RollingStep(new_replicas=new.replicas, old_replicas=targets, scaled_down=scaled_down)
    return RollingStep(
        new_replicas=desired,
        old_replicas=targets,
        scaled_up=max(0, desired - new.replicas),
        scaled_down=max(0, new.replicas - desired),
    )


def rollout_complete(desired: int, new: ReplicaSetState, old: list[ReplicaSetState]) -> bool:
    """Old ReplicaSets drained and every desired new Pod available."""
    return (
        new.replicas == desired
        and new.available >= desired
        and all(rs.replicas == 0 and rs.pods == 0 for rs in old)
    )
