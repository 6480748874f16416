"""
Rollout status conditions and phase calculation.
"""
from typing import List, Optional, Tuple

from rollout_controller import defaults, timeutil
from rollout_controller.rollout_types import (
    Rollout,
    RolloutCondition,
    RolloutPhase,
    RolloutSpec,
    RolloutStatus,
)

# Condition types
AVAILABLE = "Available"
PROGRESSING = "Progressing"
REPLICA_FAILURE = "ReplicaFailure"
INVALID_SPEC = "InvalidSpec"
PAUSED = "Paused"
COMPLETED = "Completed"
HEALTHY = "Healthy"

TRUE = "True"
FALSE = "False"
UNKNOWN = "Unknown"

# Reasons and messages
INVALID_SPEC_REASON = "InvalidSpec"
AVAILABLE_REASON = "AvailableReason"
AVAILABLE_MESSAGE = "Rollout has minimum availability"
NOT_AVAILABLE_MESSAGE = "Rollout does not have minimum availability"
NEW_RS_REASON = "NewReplicaSetCreated"
NEW_RS_MESSAGE = "Created new replica set {!r}"
FOUND_NEW_RS_REASON = "FoundNewReplicaSet"
FOUND_NEW_RS_MESSAGE = "Found new replica set {!r}"
FAILED_RS_CREATE_REASON = "ReplicaSetCreateError"
FAILED_RS_CREATE_MESSAGE = "Failed to create new replica set {!r}: {}"
RS_UPDATED_REASON = "ReplicaSetUpdated"
RS_PROGRESSING_MESSAGE = "ReplicaSet {!r} is progressing."
ROLLOUT_PROGRESSING_MESSAGE = "Rollout {!r} is progressing."
RS_NOT_AVAILABLE_REASON = "ReplicaSetNotAvailable"
NEW_RS_AVAILABLE_REASON = "NewReplicaSetAvailable"
RS_COMPLETED_MESSAGE = "ReplicaSet {!r} has successfully progressed."
TIMED_OUT_REASON = "ProgressDeadlineExceeded"
RS_TIMED_OUT_MESSAGE = "ReplicaSet {!r} has timed out progressing."
ROLLOUT_TIMED_OUT_MESSAGE = "Rollout {!r} has timed out progressing."
PAUSED_REASON = "RolloutPaused"
PAUSED_MESSAGE = "Rollout is paused"
RESUMED_REASON = "RolloutResumed"
RESUMED_MESSAGE = "Rollout is resumed"
RETRY_REASON = "RolloutRetry"
RETRY_MESSAGE = "Retrying Rollout after abort"
ABORTED_REASON = "RolloutAborted"
ABORTED_MESSAGE = "Rollout aborted update to revision {}"
HEALTHY_REASON = "RolloutHealthy"
HEALTHY_MESSAGE = "Rollout is healthy"
NOT_HEALTHY_MESSAGE = "Rollout is not healthy"
COMPLETED_REASON = "RolloutCompleted"
COMPLETED_MESSAGE = "Rollout completed update to revision {} ({}): {}"
NOT_COMPLETED_REASON = "RolloutNotCompleted"
NOT_COMPLETED_MESSAGE = "Rollout went to not completed state started update to revision {}, pods with hash {}"
REPLICA_FAILURE_REASON = "ReplicaSetFailure"
TRAFFIC_WEIGHT_UPDATED_REASON = "TrafficWeightUpdated"
TRAFFIC_ROUTING_ERROR_REASON = "TrafficRoutingError"
WEIGHT_VERIFY_ERROR_REASON = "WeightVerifyError"
SCALING_RS_REASON = "ScalingReplicaSet"
SCALING_RS_MESSAGE = "Scaled {} ReplicaSet {} (revision {}) from {} to {}"
NEW_RS_DETAILED_MESSAGE = "Created ReplicaSet {} (revision {})"
ROLLOUT_UPDATED_REASON = "RolloutUpdated"
ROLLOUT_UPDATED_MESSAGE = "Rollout updated to revision {}"
SERVICE_MANAGED_BY_OTHER_MESSAGE = "Service {!r} is managed by another Rollout"
SERVICE_NOT_FOUND_MESSAGE = "Service {!r} not found"


def new_condition(cond_type: str, status: str, reason: str, message: str) -> RolloutCondition:
    now = timeutil.now()
    return RolloutCondition(
        type=cond_type,
        status=status,
        reason=reason,
        message=message,
        last_update_time=now,
        last_transition_time=now,
    )


def get_condition(status: RolloutStatus, cond_type: str) -> Optional[RolloutCondition]:
    for cond in status.conditions:
        if cond.type == cond_type:
            return cond
    return None


def set_condition(status: RolloutStatus, condition: RolloutCondition) -> bool:
    """
    Add or replace a condition of the same type.

    Returns:
        True when the condition list changed
    """
    current = get_condition(status, condition.type)
    if (
        current is not None
        and current.status == condition.status
        and current.reason == condition.reason
        and current.message == condition.message
    ):
        return False
    if current is not None and current.status == condition.status:
        condition = condition.model_copy(update={"last_transition_time": current.last_transition_time})
    status.conditions = [c for c in status.conditions if c.type != condition.type] + [condition]
    return True


def remove_condition(status: RolloutStatus, cond_type: str) -> None:
    status.conditions = [c for c in status.conditions if c.type != cond_type]


def _executed_all_steps(rollout: Rollout, new_status: RolloutStatus) -> bool:
    step_count = len(rollout.spec.strategy.canary.steps)
    if step_count > 0 and new_status.current_step_index is not None:
        return new_status.current_step_index == step_count
    return True


def rollout_healthy(rollout: Rollout, new_status: RolloutStatus) -> bool:
    """True once every replica runs the current template and the strategy has finished."""
    replicas = defaults.replicas_or_default(rollout.spec.replicas)
    completed_strategy = True
    blue_green = rollout.spec.strategy.blue_green
    canary = rollout.spec.strategy.canary
    if blue_green is not None:
        active_done = new_status.blue_green.active_selector == new_status.current_pod_hash
        preview_done = True
        if blue_green.preview_service:
            preview_done = new_status.blue_green.preview_selector == new_status.current_pod_hash
        completed_strategy = active_done and preview_done
    if canary is not None:
        stable_is_current = new_status.stable_rs != "" and new_status.stable_rs == new_status.current_pod_hash
        completed_strategy = _executed_all_steps(rollout, new_status) and stable_is_current
    return (
        new_status.updated_replicas == replicas
        and new_status.available_replicas == replicas
        and rollout.status.observed_generation == str(rollout.metadata.generation)
        and completed_strategy
    )


def rollout_progressing(rollout: Rollout, new_status: RolloutStatus) -> bool:
    old_status = rollout.status
    strategy_progress = False
    stable_changed = new_status.stable_rs != old_status.stable_rs
    if rollout.spec.strategy.blue_green is not None:
        active_changed = old_status.blue_green.active_selector != new_status.blue_green.active_selector
        strategy_progress = active_changed or stable_changed
    if rollout.spec.strategy.canary is not None:
        step_changed = old_status.current_step_index != new_status.current_step_index
        strategy_progress = stable_changed or step_changed
    old_old_replicas = old_status.replicas - old_status.updated_replicas
    new_old_replicas = new_status.replicas - new_status.updated_replicas
    return (
        new_status.updated_replicas != old_status.updated_replicas
        or new_old_replicas < old_old_replicas
        or new_status.ready_replicas > old_status.ready_replicas
        or new_status.available_replicas > old_status.available_replicas
        or strategy_progress
    )


def rollout_timed_out(rollout: Rollout, new_status: RolloutStatus) -> bool:
    condition = get_condition(new_status, PROGRESSING)
    if condition is None:
        return False
    if condition.reason == NEW_RS_AVAILABLE_REASON:
        return False
    if condition.reason == TIMED_OUT_REASON:
        return True
    if condition.last_update_time is None:
        return False
    deadline = condition.last_update_time + timeutil.seconds(defaults.progress_deadline_seconds(rollout))
    return deadline < timeutil.now()


def rollout_completed(rollout: Rollout, new_status: RolloutStatus) -> bool:
    if rollout.spec.strategy.blue_green is not None:
        return new_status.stable_rs == new_status.current_pod_hash
    if rollout.spec.strategy.canary is not None:
        stable_is_current = new_status.stable_rs != "" and new_status.stable_rs == new_status.current_pod_hash
        return _executed_all_steps(rollout, new_status) and stable_is_current
    return False


def calculate_rollout_phase(spec: RolloutSpec, status: RolloutStatus) -> Tuple[RolloutPhase, str]:
    """
    Derive the user facing phase and message from spec and a freshly compiled status.

    Args:
        spec: Rollout spec
        status: Status about to be persisted

    Returns:
        Tuple of (phase, message)
    """
    for cond in status.conditions:
        if cond.type == INVALID_SPEC:
            return RolloutPhase.DEGRADED, f"{INVALID_SPEC}: {cond.message}"
        if cond.reason in (ABORTED_REASON, TIMED_OUT_REASON):
            return RolloutPhase.DEGRADED, f"{cond.reason}: {cond.message}"
    if spec.paused:
        return RolloutPhase.PAUSED, "manually paused"
    for pause_cond in status.pause_conditions:
        return RolloutPhase.PAUSED, pause_cond.reason.value
    if spec.restart_at is not None and (status.restarted_at is None or spec.restart_at != status.restarted_at):
        return RolloutPhase.PROGRESSING, "rollout is restarting"
    if status.updated_replicas < defaults.replicas_or_default(spec.replicas):
        return RolloutPhase.PROGRESSING, "more replicas need to be updated"
    if status.available_replicas < status.updated_replicas:
        return RolloutPhase.PROGRESSING, "updated replicas are still becoming available"
    if spec.strategy.blue_green is not None:
        active = status.blue_green.active_selector
        if active == "" or active != status.current_pod_hash:
            return RolloutPhase.PROGRESSING, "active service cutover pending"
        if status.stable_rs == "" or status.stable_rs != status.current_pod_hash:
            return RolloutPhase.PROGRESSING, "waiting for analysis to complete"
    elif spec.strategy.canary is not None:
        if spec.strategy.canary.traffic_routing is None and status.replicas > status.updated_replicas:
            return RolloutPhase.PROGRESSING, "old replicas are pending termination"
        if status.stable_rs == "" or status.stable_rs != status.current_pod_hash:
            return RolloutPhase.PROGRESSING, "waiting for all steps to complete"
    return RolloutPhase.HEALTHY, ""


def in_progress(conditions: List[RolloutCondition]) -> bool:
    """True while the Progressing condition has not turned False."""
    for cond in conditions:
        if cond.type == PROGRESSING:
            return cond.status != FALSE
    return True
