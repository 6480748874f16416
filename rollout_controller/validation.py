"""
Rollout spec validation.

A rollout that fails validation is not reconciled; it gets an InvalidSpec condition
and is retried once its spec changes.
"""
import logging
from typing import List

from kubernetes.client.rest import ApiException

from rollout_controller import defaults
from rollout_controller.conditions import SERVICE_MANAGED_BY_OTHER_MESSAGE, SERVICE_NOT_FOUND_MESSAGE
from rollout_controller.errors import InvalidSpecError
from rollout_controller.replicaset_util import scaled_int_or_percent
from rollout_controller.rollout_types import CanaryStep, Rollout

logger = logging.getLogger(__name__)

MISSING_FIELD_MESSAGE = "Rollout has missing field '{}'"
SELECT_ALL_MESSAGE = "This rollout is selecting all pods. A non-empty selector is required."
INVALID_SET_WEIGHT_MESSAGE = "SetWeight needs to be between 0 and 100"
INVALID_DURATION_MESSAGE = "Duration needs to be greater than 0"
INVALID_MAX_SURGE_MAX_UNAVAILABLE = "MaxSurge and MaxUnavailable both can not be zero"
INVALID_STEP_MESSAGE = "Step must have one of the following set: experiment, setWeight, or pause"
INVALID_STRATEGY_MESSAGE = "Multiple Strategies can not be listed"
DUPLICATED_SERVICES_MESSAGE = (
    "This rollout uses the same service for the active and preview services, but two different services are required."
)
DUPLICATED_CANARY_SERVICES_MESSAGE = (
    "This rollout uses the same service for the stable and canary services, but two different services are required."
)
INVALID_TRAFFIC_ROUTING_MESSAGE = "Canary service and Stable service must be set to use Traffic Routing"
SCALE_DOWN_LIMIT_LARGER_THAN_REVISION_LIMIT = (
    "This rollout's revision history limit can not be smaller than the rollout's scale down limit"
)
INVALID_CANARY_SCALE_MESSAGE = "SetCanaryScale can not set both replicas and weight"
SELECTOR_MISMATCH_MESSAGE = "`selector` does not match template `labels`"
INVALID_SPEC_MESSAGE = "The Rollout \"{}\" is invalid: {}"


def validate_rollout(rollout: Rollout) -> List[InvalidSpecError]:
    """
    Check a rollout spec for errors that make it impossible to reconcile.

    Args:
        rollout: Rollout whose spec.template is already resolved (workloadRef applied)

    Returns:
        List of errors, empty when the spec is valid
    """
    spec = rollout.spec
    errs: List[InvalidSpecError] = []

    if spec.replicas is not None and spec.replicas < 0:
        errs.append(InvalidSpecError("spec.replicas", "must be greater than or equal to 0"))

    if spec.selector is None:
        errs.append(InvalidSpecError("spec.selector", MISSING_FIELD_MESSAGE.format(".Spec.Selector")))
    elif not spec.selector.match_labels and not spec.selector.match_expressions:
        errs.append(InvalidSpecError("spec.selector", SELECT_ALL_MESSAGE))
    else:
        labels = spec.template.get("metadata", {}).get("labels") or {}
        for key, value in spec.selector.match_labels.items():
            if labels.get(key) != value:
                errs.append(InvalidSpecError("spec.template.metadata.labels", SELECTOR_MISMATCH_MESSAGE))
                break

    if spec.min_ready_seconds < 0:
        errs.append(InvalidSpecError("spec.minReadySeconds", "must be greater than or equal to 0"))
    if spec.revision_history_limit is not None and spec.revision_history_limit < 0:
        errs.append(InvalidSpecError("spec.revisionHistoryLimit", "must be greater than or equal to 0"))
    if spec.progress_deadline_seconds is not None:
        if spec.progress_deadline_seconds < 0:
            errs.append(InvalidSpecError("spec.progressDeadlineSeconds", "must be greater than or equal to 0"))
        if spec.progress_deadline_seconds <= spec.min_ready_seconds:
            errs.append(InvalidSpecError("spec.progressDeadlineSeconds", "must be greater than minReadySeconds"))

    errs.extend(_validate_strategy(rollout))
    return errs


def _validate_strategy(rollout: Rollout) -> List[InvalidSpecError]:
    strategy = rollout.spec.strategy
    if strategy.blue_green is None and strategy.canary is None:
        message = MISSING_FIELD_MESSAGE.format(".Spec.Strategy.Canary or .Spec.Strategy.BlueGreen")
        return [InvalidSpecError("spec.strategy", message)]
    if strategy.blue_green is not None and strategy.canary is not None:
        return [InvalidSpecError("spec.strategy", INVALID_STRATEGY_MESSAGE)]
    if strategy.blue_green is not None:
        return _validate_blue_green(rollout)
    return _validate_canary(rollout)


def _validate_blue_green(rollout: Rollout) -> List[InvalidSpecError]:
    blue_green = rollout.spec.strategy.blue_green
    errs: List[InvalidSpecError] = []
    if not blue_green.active_service:
        errs.append(InvalidSpecError("spec.strategy.blueGreen.activeService", MISSING_FIELD_MESSAGE.format(".Spec.Strategy.BlueGreen.ActiveService")))
    elif blue_green.active_service == blue_green.preview_service:
        errs.append(InvalidSpecError("spec.strategy.blueGreen.activeService", DUPLICATED_SERVICES_MESSAGE))
    limit = blue_green.scale_down_delay_revision_limit
    if limit is not None and limit > defaults.revision_history_limit(rollout):
        errs.append(InvalidSpecError("spec.strategy.blueGreen.scaleDownDelayRevisionLimit", SCALE_DOWN_LIMIT_LARGER_THAN_REVISION_LIMIT))
    if blue_green.preview_replica_count is not None and blue_green.preview_replica_count < 0:
        errs.append(InvalidSpecError("spec.strategy.blueGreen.previewReplicaCount", "must be greater than or equal to 0"))
    return errs


def _validate_canary(rollout: Rollout) -> List[InvalidSpecError]:
    canary = rollout.spec.strategy.canary
    errs: List[InvalidSpecError] = []
    replicas = defaults.replicas_or_default(rollout.spec.replicas)
    surge = defaults.DEFAULT_MAX_SURGE if canary.max_surge is None else canary.max_surge
    unavailable = defaults.DEFAULT_MAX_UNAVAILABLE if canary.max_unavailable is None else canary.max_unavailable
    try:
        if scaled_int_or_percent(surge, replicas, True) == 0 and scaled_int_or_percent(unavailable, replicas, False) == 0:
            errs.append(InvalidSpecError("spec.strategy.canary.maxSurge", INVALID_MAX_SURGE_MAX_UNAVAILABLE))
    except ValueError:
        errs.append(InvalidSpecError("spec.strategy.canary.maxSurge", "must be an integer or a percentage"))

    if canary.canary_service and canary.canary_service == canary.stable_service:
        errs.append(InvalidSpecError("spec.strategy.canary.stableService", DUPLICATED_CANARY_SERVICES_MESSAGE))
    if canary.traffic_routing is not None and not (canary.canary_service and canary.stable_service):
        errs.append(InvalidSpecError("spec.strategy.canary.trafficRouting", INVALID_TRAFFIC_ROUTING_MESSAGE))

    limit = canary.scale_down_delay_revision_limit
    if limit is not None and limit > defaults.revision_history_limit(rollout):
        errs.append(InvalidSpecError("spec.strategy.canary.scaleDownDelayRevisionLimit", SCALE_DOWN_LIMIT_LARGER_THAN_REVISION_LIMIT))

    for i, step in enumerate(canary.steps):
        errs.extend(_validate_step(step, f"spec.strategy.canary.steps[{i}]"))
    return errs


def _validate_step(step: CanaryStep, path: str) -> List[InvalidSpecError]:
    actions = step.actions()
    if len(actions) != 1:
        return [InvalidSpecError(path, INVALID_STEP_MESSAGE)]
    if step.set_weight is not None and not 0 <= step.set_weight <= defaults.MAX_TRAFFIC_WEIGHT:
        return [InvalidSpecError(f"{path}.setWeight", INVALID_SET_WEIGHT_MESSAGE)]
    if step.pause is not None:
        try:
            duration = step.pause.duration_seconds()
        except ValueError as e:
            return [InvalidSpecError(f"{path}.pause.duration", str(e))]
        if duration is not None and duration < 0:
            return [InvalidSpecError(f"{path}.pause.duration", INVALID_DURATION_MESSAGE)]
    scale = step.set_canary_scale
    if scale is not None:
        if scale.replicas is not None and scale.weight is not None:
            return [InvalidSpecError(f"{path}.setCanaryScale", INVALID_CANARY_SCALE_MESSAGE)]
        if scale.weight is not None and not 0 <= scale.weight <= defaults.MAX_TRAFFIC_WEIGHT:
            return [InvalidSpecError(f"{path}.setCanaryScale.weight", INVALID_SET_WEIGHT_MESSAGE)]
    return []


def referenced_service_names(rollout: Rollout) -> List[tuple]:
    """(field path, service name) for every service the strategy refers to."""
    strategy = rollout.spec.strategy
    names = []
    if strategy.blue_green is not None:
        names.append(("spec.strategy.blueGreen.activeService", strategy.blue_green.active_service))
        names.append(("spec.strategy.blueGreen.previewService", strategy.blue_green.preview_service))
    elif strategy.canary is not None:
        names.append(("spec.strategy.canary.canaryService", strategy.canary.canary_service))
        names.append(("spec.strategy.canary.stableService", strategy.canary.stable_service))
    return [(path, name) for path, name in names if name]


def validate_referenced_services(rollout: Rollout, client) -> List[InvalidSpecError]:
    """
    Check that every referenced service exists and is not managed by another rollout.

    Raises:
        ApiException: For API errors other than NotFound
    """
    errs: List[InvalidSpecError] = []
    for path, name in referenced_service_names(rollout):
        try:
            service = client.get_service(rollout.namespace, name)
        except ApiException as e:
            if e.status == 404:
                errs.append(InvalidSpecError(path, SERVICE_NOT_FOUND_MESSAGE.format(name)))
                continue
            raise
        managed_by = service.annotations.get(defaults.MANAGED_BY_ANNOTATION)
        if managed_by and managed_by != rollout.name:
            errs.append(InvalidSpecError(path, SERVICE_MANAGED_BY_OTHER_MESSAGE.format(name)))
    return errs


def invalid_spec_message(rollout: Rollout, errs: List[InvalidSpecError]) -> str:
    return INVALID_SPEC_MESSAGE.format(rollout.name, "; ".join(str(e) for e in errs))
