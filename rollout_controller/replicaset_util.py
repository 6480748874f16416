"""
Replica set inventory helpers.

Pure functions over a rollout and its replica sets: template hashing, new/stable/other
classification, replica count arithmetic for both strategies and the canary step helpers
that the reconciliation code shares.
"""
import copy
import hashlib
import json
import logging
import math
from datetime import timedelta
from typing import Dict, Any, List, Optional, Tuple, Union

from rollout_controller import defaults, timeutil
from rollout_controller.ephemeral_metadata import strip_ephemeral_metadata
from rollout_controller.kube_types import ReplicaSet
from rollout_controller.rollout_types import (
    CanaryStep,
    Rollout,
    RolloutExperimentStep,
    SetCanaryScale,
    TrafficWeights,
)

logger = logging.getLogger(__name__)

_SAFE_ALPHABET = "bcdfghjklmnpqrstvwxz2456789"


# -----------------------------------------------------------------------------
# Hashing
# -----------------------------------------------------------------------------
def _safe_encode(value: str) -> str:
    return "".join(_SAFE_ALPHABET[ord(ch) % len(_SAFE_ALPHABET)] for ch in value)


def compute_hash(obj: Any, collision_count: Optional[int] = None) -> str:
    """
    Stable short hash of a JSON-serialisable object.

    Args:
        obj: Object to hash (dict/list of plain values)
        collision_count: Optional collision counter mixed into the hash

    Returns:
        Hash string safe for use as a label value
    """
    digest = hashlib.sha256(json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8"))
    if collision_count is not None:
        digest.update(int(collision_count).to_bytes(8, "little", signed=False))
    value = int.from_bytes(digest.digest()[:4], "big")
    return _safe_encode(str(value))


def compute_pod_template_hash(rollout: Rollout) -> str:
    return compute_hash(rollout.spec.template, rollout.status.collision_count)


def compute_step_hash(rollout: Rollout) -> str:
    canary = rollout.spec.strategy.canary
    if rollout.spec.strategy.blue_green is not None or canary is None:
        return ""
    return compute_hash([step.to_api() for step in canary.steps])


def _without_hash_label(template: Dict[str, Any]) -> Dict[str, Any]:
    template = copy.deepcopy(template or {})
    labels = template.get("metadata", {}).get("labels")
    if labels is not None:
        labels.pop(defaults.POD_TEMPLATE_HASH_LABEL, None)
    return template


def pod_template_equal_ignore_hash(live: Dict[str, Any], desired: Dict[str, Any]) -> bool:
    return _without_hash_label(live) == _without_hash_label(desired)


# -----------------------------------------------------------------------------
# Inventory
# -----------------------------------------------------------------------------
def sort_by_creation(replica_sets: List[ReplicaSet]) -> List[ReplicaSet]:
    return sorted(
        [rs for rs in replica_sets if rs is not None],
        key=lambda rs: (rs.creation_timestamp is None, rs.creation_timestamp or 0, rs.name),
    )


def find_new_replica_set(rollout: Rollout, replica_sets: List[ReplicaSet]) -> Optional[ReplicaSet]:
    """
    Find the replica set running the rollout's current pod template.

    The hash label is tried first; otherwise the oldest replica set whose template matches
    (ignoring the hash label and injected ephemeral metadata) is returned.
    """
    ordered = sort_by_creation(replica_sets)
    pod_hash = compute_pod_template_hash(rollout)
    for rs in ordered:
        if rs.pod_template_hash == pod_hash:
            return rs
    for rs in ordered:
        live = strip_ephemeral_metadata(rs)
        if pod_template_equal_ignore_hash(live, rollout.spec.template):
            logger.info(
                f"Pod template hash changed (expected: {pod_hash}, actual: {rs.pod_template_hash})"
            )
            return rs
    return None


def find_old_replica_sets(replica_sets: List[ReplicaSet], new_rs: Optional[ReplicaSet]) -> List[ReplicaSet]:
    return [rs for rs in replica_sets if rs is not None and (new_rs is None or rs.name != new_rs.name)]


def get_replica_set_by_template_hash(replica_sets: List[ReplicaSet], pod_hash: str) -> Optional[ReplicaSet]:
    if not pod_hash:
        return None
    for rs in replica_sets:
        if rs is not None and rs.pod_template_hash == pod_hash:
            return rs
    return None


def get_stable_rs(rollout: Rollout, new_rs: Optional[ReplicaSet], replica_sets: List[ReplicaSet]) -> Optional[ReplicaSet]:
    stable_hash = rollout.status.stable_rs
    if not stable_hash:
        return None
    if new_rs is not None and new_rs.pod_template_hash == stable_hash:
        return new_rs
    return get_replica_set_by_template_hash(replica_sets, stable_hash)


def get_other_rss(new_rs: Optional[ReplicaSet], stable_rs: Optional[ReplicaSet], replica_sets: List[ReplicaSet]) -> List[ReplicaSet]:
    skip = {rs.name for rs in (new_rs, stable_rs) if rs is not None}
    return [rs for rs in replica_sets if rs is not None and rs.name not in skip]


def filter_active(replica_sets: List[ReplicaSet]) -> List[ReplicaSet]:
    return [rs for rs in replica_sets if rs is not None and rs.replicas > 0]


def check_stable_rs_exists(new_rs: Optional[ReplicaSet], stable_rs: Optional[ReplicaSet]) -> bool:
    if stable_rs is None:
        return False
    if new_rs is None:
        return True
    return new_rs.name != stable_rs.name


# -----------------------------------------------------------------------------
# Revisions
# -----------------------------------------------------------------------------
def revision(rs: ReplicaSet) -> Optional[int]:
    value = rs.annotations.get(defaults.REVISION_ANNOTATION)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        logger.warning(f"⚠️ Unable to parse revision {value!r} of ReplicaSet {rs.name}")
        return None


def max_revision(replica_sets: List[ReplicaSet]) -> int:
    highest = 0
    for rs in replica_sets:
        if rs is None:
            continue
        value = revision(rs)
        if value is not None and value > highest:
            highest = value
    return highest


def rollout_revision(rollout: Rollout) -> Optional[int]:
    value = rollout.metadata.annotations.get(defaults.REVISION_ANNOTATION)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def sort_by_revision(replica_sets: List[ReplicaSet], reverse: bool = False) -> List[ReplicaSet]:
    """Order by revision annotation, falling back to creation time for ties and unparsable revisions."""
    def key(rs: ReplicaSet):
        value = revision(rs)
        created = rs.creation_timestamp.timestamp() if rs.creation_timestamp else 0
        return (value if value is not None else -1, created)

    return sorted([rs for rs in replica_sets if rs is not None], key=key, reverse=reverse)


# -----------------------------------------------------------------------------
# Counts
# -----------------------------------------------------------------------------
def replica_count(replica_sets: List[Optional[ReplicaSet]]) -> int:
    return sum(rs.replicas for rs in replica_sets if rs is not None)


def available_count(replica_sets: List[Optional[ReplicaSet]]) -> int:
    return sum(rs.available_replicas for rs in replica_sets if rs is not None)


def actual_count(replica_sets: List[Optional[ReplicaSet]]) -> int:
    return sum(rs.status_replicas for rs in replica_sets if rs is not None)


def ready_count(replica_sets: List[Optional[ReplicaSet]]) -> int:
    return sum(rs.ready_replicas for rs in replica_sets if rs is not None)


def is_saturated(rollout: Rollout, rs: Optional[ReplicaSet]) -> bool:
    """A replica set is saturated when it runs and has available every desired replica."""
    if rs is None:
        return False
    desired = rs.annotations.get(defaults.DESIRED_REPLICAS_ANNOTATION)
    if desired is None or not desired.isdigit():
        return False
    return (
        int(desired) == defaults.replicas_or_default(rollout.spec.replicas)
        and rs.replicas == int(desired)
        and rs.available_replicas == int(desired)
    )


def is_replica_set_ready(rs: Optional[ReplicaSet]) -> bool:
    if rs is None:
        return False
    return rs.replicas != 0 and rs.ready_replicas != 0 and rs.replicas <= rs.ready_replicas


def is_replica_set_available(rs: Optional[ReplicaSet]) -> bool:
    if rs is None:
        return False
    return rs.replicas != 0 and rs.available_replicas != 0 and rs.replicas <= rs.available_replicas


# -----------------------------------------------------------------------------
# Surge / unavailability
# -----------------------------------------------------------------------------
def scaled_int_or_percent(value: Union[int, str, None], total: int, round_up: bool) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.endswith("%"):
        percent = int(text[:-1])
        raw = percent * total / 100.0
        return int(math.ceil(raw)) if round_up else int(math.floor(raw))
    return int(text)


def resolve_fenceposts(max_surge, max_unavailable, desired: int) -> Tuple[int, int]:
    surge = scaled_int_or_percent(max_surge, desired, round_up=True)
    unavailable = scaled_int_or_percent(max_unavailable, desired, round_up=False)
    if surge == 0 and unavailable == 0:
        unavailable = 1
    return surge, unavailable


def max_unavailable(rollout: Rollout) -> int:
    replicas = defaults.replicas_or_default(rollout.spec.replicas)
    if replicas == 0:
        return 0
    strategy = rollout.spec.strategy
    if strategy.canary is not None:
        surge = strategy.canary.max_surge
        unavailable = strategy.canary.max_unavailable
        if surge is None:
            surge = defaults.DEFAULT_MAX_SURGE
        if unavailable is None:
            unavailable = defaults.DEFAULT_MAX_UNAVAILABLE
        _, value = resolve_fenceposts(surge, unavailable, replicas)
    elif strategy.blue_green is not None:
        value = scaled_int_or_percent(strategy.blue_green.max_unavailable, replicas, round_up=False)
    else:
        value = 0
    return min(value, replicas)


def max_surge(rollout: Rollout) -> int:
    canary = rollout.spec.strategy.canary
    if canary is None:
        return 0
    surge = defaults.DEFAULT_MAX_SURGE if canary.max_surge is None else canary.max_surge
    unavailable = defaults.DEFAULT_MAX_UNAVAILABLE if canary.max_unavailable is None else canary.max_unavailable
    value, _ = resolve_fenceposts(surge, unavailable, defaults.replicas_or_default(rollout.spec.replicas))
    return value


# -----------------------------------------------------------------------------
# Change detection
# -----------------------------------------------------------------------------
def check_pod_spec_change(rollout: Rollout, new_rs: Optional[ReplicaSet]) -> bool:
    if not rollout.status.current_pod_hash:
        return False
    pod_hash = new_rs.pod_template_hash if new_rs is not None else compute_pod_template_hash(rollout)
    if rollout.status.current_pod_hash != pod_hash:
        logger.info(f"Pod template change detected (new: {pod_hash}, old: {rollout.status.current_pod_hash})")
        return True
    return False


def check_step_hash_change(rollout: Rollout) -> bool:
    if not rollout.status.current_step_hash:
        return True
    step_hash = compute_step_hash(rollout)
    if rollout.status.current_step_hash != step_hash:
        logger.info(f"Canary steps change detected (new: {step_hash}, old: {rollout.status.current_step_hash})")
        return True
    return False


def pod_template_or_steps_changed(rollout: Rollout, new_rs: Optional[ReplicaSet]) -> bool:
    return check_step_hash_change(rollout) or check_pod_spec_change(rollout, new_rs)


def reset_current_step_index(rollout: Rollout) -> Optional[int]:
    canary = rollout.spec.strategy.canary
    if canary is not None and canary.steps:
        return 0
    return None


def needs_restart(rollout: Rollout) -> bool:
    restart_at = rollout.spec.restart_at
    if restart_at is None:
        return False
    if rollout.status.restarted_at is not None and restart_at == rollout.status.restarted_at:
        return False
    return timeutil.now() > timeutil.parse_time(restart_at)


# -----------------------------------------------------------------------------
# Canary steps
# -----------------------------------------------------------------------------
def get_current_canary_step(rollout: Rollout) -> Tuple[Optional[CanaryStep], Optional[int]]:
    canary = rollout.spec.strategy.canary
    if canary is None or not canary.steps:
        return None, None
    index = rollout.status.current_step_index or 0
    if index >= len(canary.steps):
        return None, index
    return canary.steps[index], index


def get_current_set_weight(rollout: Rollout) -> int:
    if rollout.status.abort:
        return 0
    step, index = get_current_canary_step(rollout)
    if step is None:
        return 100
    for i in range(index, -1, -1):
        weight = rollout.spec.strategy.canary.steps[i].set_weight
        if weight is not None:
            return weight
    return 0


def get_previous_set_weight(rollout: Rollout, index: int) -> int:
    """Weight of the last setWeight step before `index`, 0 when there is none."""
    steps = rollout.spec.strategy.canary.steps
    for i in range(min(index, len(steps)) - 1, -1, -1):
        if steps[i].set_weight is not None:
            return steps[i].set_weight
    return 0


def use_set_canary_scale(rollout: Rollout) -> Optional[SetCanaryScale]:
    step, index = get_current_canary_step(rollout)
    if step is None:
        return None
    canary = rollout.spec.strategy.canary
    if canary.traffic_routing is None:
        return None
    for i in range(index, -1, -1):
        scale = canary.steps[i].set_canary_scale
        if scale is None:
            continue
        if scale.match_traffic_weight:
            return None
        return scale
    return None


def get_current_experiment_step(rollout: Rollout) -> Optional[RolloutExperimentStep]:
    step, index = get_current_canary_step(rollout)
    if step is None:
        return None
    for i in range(index, -1, -1):
        candidate = rollout.spec.strategy.canary.steps[i]
        if candidate.set_weight is not None:
            return None
        if candidate.experiment is not None:
            return candidate.experiment
    return None


def get_canary_replicas_or_weight(rollout: Rollout) -> Tuple[Optional[int], int]:
    """
    Replicas or weight the canary should run at for the current step.

    Returns:
        Tuple of (explicit replica count or None, weight)
    """
    if rollout.status.promote_full or rollout.status.current_pod_hash == rollout.status.stable_rs:
        return None, 100
    scale = use_set_canary_scale(rollout)
    if scale is not None:
        if scale.replicas is not None:
            return scale.replicas, 0
        if scale.weight is not None:
            return None, scale.weight
    return None, get_current_set_weight(rollout)


def before_starting_step(rollout: Rollout) -> bool:
    canary = rollout.spec.strategy.canary
    if canary is None or canary.analysis is None or canary.analysis.starting_step is None:
        return False
    _, index = get_current_canary_step(rollout)
    if index is not None:
        return index < canary.analysis.starting_step
    return False


# -----------------------------------------------------------------------------
# Canary replica arithmetic
# -----------------------------------------------------------------------------
def _weight_to_replicas(replicas: int, weight: int) -> int:
    return int(math.ceil(replicas * weight / 100.0))


def extra_replica_added(replicas: int, weight: int) -> bool:
    return (replicas * weight / 100.0) % 1 != 0


def get_replicas_for_scale_down(rs: Optional[ReplicaSet], ignore_availability: bool) -> int:
    if rs is None:
        return 0
    if rs.replicas < rs.available_replicas:
        return rs.replicas
    if ignore_availability:
        return rs.replicas
    return rs.available_replicas


def check_min_pods_per_replica_set(rollout: Rollout, count: int) -> int:
    canary = rollout.spec.strategy.canary
    if count == 0 or canary is None or canary.min_pods_per_replica_set is None or canary.traffic_routing is None:
        return count
    return max(count, canary.min_pods_per_replica_set)


def desired_replica_counts_for_canary(
    rollout: Rollout, new_rs: Optional[ReplicaSet], stable_rs: Optional[ReplicaSet]
) -> Tuple[int, int]:
    replicas = defaults.replicas_or_default(rollout.spec.replicas)
    explicit, weight = get_canary_replicas_or_weight(rollout)
    if explicit is not None:
        desired_new, desired_stable = explicit, replicas
    else:
        desired_new = _weight_to_replicas(replicas, weight)
        desired_stable = _weight_to_replicas(replicas, 100 - weight)
    if not check_stable_rs_exists(new_rs, stable_rs):
        desired_new, desired_stable = replicas, 0
    if rollout.spec.strategy.canary.traffic_routing is not None:
        desired_stable = replicas
    return desired_new, desired_stable


def calculate_replica_counts_for_basic_canary(
    rollout: Rollout,
    new_rs: Optional[ReplicaSet],
    stable_rs: Optional[ReplicaSet],
    other_rss: List[ReplicaSet],
) -> Tuple[int, int]:
    """
    Next replica counts for the new and stable replica sets of a canary without traffic routing.

    The counts move toward the step weight while keeping the total within maxSurge above
    and maxUnavailable below the desired replica count.

    Returns:
        Tuple of (new replica set count, stable replica set count)
    """
    replicas = defaults.replicas_or_default(rollout.spec.replicas)
    explicit, weight = get_canary_replicas_or_weight(rollout)
    if explicit is not None:
        return explicit, replicas

    desired_stable = _weight_to_replicas(replicas, 100 - weight)
    desired_new = _weight_to_replicas(replicas, weight)

    new_count = new_rs.replicas if new_rs is not None else 0
    stable_count = 0
    scale_stable = check_stable_rs_exists(new_rs, stable_rs)
    if scale_stable:
        stable_count = stable_rs.replicas
    else:
        desired_new, desired_stable = replicas, 0

    surge = max_surge(rollout)
    if extra_replica_added(replicas, weight):
        surge += 1
    max_allowed = replicas + surge

    counted = list(other_rss) + [new_rs]
    if scale_stable:
        counted.append(stable_rs)
    scale_up = max_allowed - replica_count(counted)

    if scale_stable and stable_rs.replicas < desired_stable and scale_up > 0:
        if stable_rs.replicas + scale_up < desired_stable:
            stable_count = stable_rs.replicas + scale_up
            scale_up = 0
        else:
            stable_count = desired_stable
            scale_up -= desired_stable - stable_rs.replicas

    if new_rs is not None and new_rs.replicas < desired_new and scale_up > 0:
        new_count = min(new_rs.replicas + scale_up, desired_new)

    if replica_count(other_rss) > 0:
        # older replica sets are scaled down before new or stable give anything up
        return new_count, stable_count

    min_available = replicas - max_unavailable(rollout)
    is_increasing = new_rs is None or desired_new >= new_rs.replicas
    to_scale_down = (
        get_replicas_for_scale_down(new_rs, not is_increasing)
        + get_replicas_for_scale_down(stable_rs if scale_stable else None, is_increasing)
    )
    if to_scale_down <= min_available:
        return new_count, stable_count

    scale_down = to_scale_down - min_available
    if new_rs is not None and new_rs.replicas > desired_new:
        if new_rs.replicas - scale_down < desired_new:
            new_count = desired_new
            scale_down -= new_rs.replicas - desired_new
        else:
            new_count = new_rs.replicas - scale_down
            scale_down = 0

    if scale_stable and stable_rs.replicas > desired_stable:
        stable_count = max(stable_rs.replicas - scale_down, desired_stable)

    return new_count, stable_count


def calculate_replica_counts_for_traffic_routed_canary(
    rollout: Rollout, weights: Optional[TrafficWeights]
) -> Tuple[int, int]:
    """
    Replica counts for a traffic-routed canary.

    Without dynamic stable scale the stable replica set stays at full size. With it, the
    stable count follows the higher of the desired stable weight and the weight last applied
    to the data plane, so stable pods are never removed before traffic has left them.

    Args:
        rollout: Rollout being reconciled
        weights: Traffic weights last applied, or None when nothing was applied yet

    Returns:
        Tuple of (canary count, stable count)
    """
    replicas = defaults.replicas_or_default(rollout.spec.replicas)
    explicit, weight = get_canary_replicas_or_weight(rollout)
    if explicit is not None:
        canary_count = explicit
    else:
        canary_count = check_min_pods_per_replica_set(rollout, _weight_to_replicas(replicas, weight))

    if not rollout.spec.strategy.canary.dynamic_stable_scale:
        return canary_count, replicas

    stable_count = _weight_to_replicas(replicas, 100 - weight)
    if weights is not None:
        stable_count = max(stable_count, _weight_to_replicas(replicas, weights.stable.weight))
        if rollout.status.abort:
            canary_count = max(canary_count, _weight_to_replicas(replicas, weights.canary.weight))
    return (
        check_min_pods_per_replica_set(rollout, canary_count),
        check_min_pods_per_replica_set(rollout, stable_count),
    )


def at_desired_replica_counts_for_canary(
    rollout: Rollout,
    new_rs: Optional[ReplicaSet],
    stable_rs: Optional[ReplicaSet],
    other_rss: List[ReplicaSet],
    weights: Optional[TrafficWeights],
) -> bool:
    traffic_routed = rollout.spec.strategy.canary.traffic_routing is not None
    if traffic_routed:
        desired_new, desired_stable = calculate_replica_counts_for_traffic_routed_canary(rollout, weights)
    else:
        desired_new, desired_stable = desired_replica_counts_for_canary(rollout, new_rs, stable_rs)
    if new_rs is None or desired_new != new_rs.replicas or desired_new != new_rs.available_replicas:
        return False
    if stable_rs is None or desired_stable != stable_rs.replicas or desired_stable != stable_rs.available_replicas:
        return False
    if not traffic_routed and available_count(other_rss) != 0:
        return False
    return True


def new_rs_new_replicas(
    rollout: Rollout,
    all_rss: List[ReplicaSet],
    new_rs: ReplicaSet,
    weights: Optional[TrafficWeights],
) -> int:
    """
    Replica count the new replica set should be scaled to this pass.

    Args:
        rollout: Rollout being reconciled
        all_rss: Every replica set owned by the rollout
        new_rs: Replica set for the current pod template
        weights: Traffic weights computed this pass (traffic-routed canaries only)

    Returns:
        Desired replica count
    """
    desired = defaults.replicas_or_default(rollout.spec.replicas)
    blue_green = rollout.spec.strategy.blue_green
    if blue_green is not None:
        if blue_green.preview_replica_count is None:
            return desired
        active_rs = get_replica_set_by_template_hash(all_rss, rollout.status.blue_green.active_selector)
        if active_rs is None or active_rs.name == new_rs.name:
            return desired
        if rollout.status.promote_full:
            return desired
        if new_rs.pod_template_hash != rollout.status.current_pod_hash:
            return blue_green.preview_replica_count
        not_paused = not rollout.spec.paused and not rollout.status.pause_conditions
        if not_paused and rollout.status.blue_green.scale_up_preview_check_point:
            return desired
        return blue_green.preview_replica_count

    stable_rs = get_stable_rs(rollout, new_rs, all_rss)
    if rollout.spec.strategy.canary.traffic_routing is None:
        other_rss = get_other_rss(new_rs, stable_rs, all_rss)
        count, _ = calculate_replica_counts_for_basic_canary(rollout, new_rs, stable_rs, other_rss)
        return count
    count, _ = calculate_replica_counts_for_traffic_routed_canary(rollout, weights)
    return count


def ready_for_pause(rollout: Rollout, new_rs: Optional[ReplicaSet], all_rss: List[ReplicaSet]) -> bool:
    """True once the new replica set has every replica it should have this pass available."""
    if new_rs is None:
        return False
    desired = new_rs_new_replicas(rollout, all_rss, new_rs, None)
    return new_rs.replicas == desired and new_rs.available_replicas == desired


# -----------------------------------------------------------------------------
# Scale down deadlines
# -----------------------------------------------------------------------------
def has_scale_down_deadline(rs: Optional[ReplicaSet]) -> bool:
    if rs is None:
        return False
    return bool(rs.annotations.get(defaults.SCALE_DOWN_DEADLINE_ANNOTATION))


def time_remaining_before_scale_down_deadline(rs: ReplicaSet) -> Optional[timedelta]:
    """
    Time left before a replica set's scale down deadline.

    Returns:
        Remaining time, or None when there is no deadline or it already passed

    Raises:
        ValueError: If the deadline annotation cannot be parsed
    """
    if not has_scale_down_deadline(rs):
        return None
    value = rs.annotations[defaults.SCALE_DOWN_DEADLINE_ANNOTATION]
    try:
        deadline = timeutil.parse_time(value)
    except ValueError:
        raise ValueError(f"unable to read scaleDownAt label on rs '{rs.name}'")
    now = timeutil.now()
    if deadline > now:
        return deadline - now
    return None
