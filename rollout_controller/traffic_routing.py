"""
Traffic weight routing for canary rollouts.

The desired canary weight is computed from the rollout state and handed to the backend
selected by the strategy's trafficRouting block. Backends are looked up in a registry so
additional routers can be plugged in under `trafficRouting.plugins`.
"""
import logging
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

import requests

from rollout_controller import defaults
from rollout_controller import replicaset_util as rsutil
from rollout_controller.conditions import (
    TRAFFIC_ROUTING_ERROR_REASON,
    TRAFFIC_WEIGHT_UPDATED_REASON,
    WEIGHT_VERIFY_ERROR_REASON,
)
from rollout_controller.config import Settings
from rollout_controller.errors import TrafficRoutingError
from rollout_controller.rollout_types import (
    AnalysisPhase,
    Rollout,
    SetHeaderRoute,
    SetMirrorRoute,
    TrafficWeights,
    WeightDestination,
)

logger = logging.getLogger(__name__)

TRAFFIC_WEIGHT_UPDATED_MESSAGE = "Traffic weight updated {}"
WEIGHT_VERIFY_ERROR_MESSAGE = "Failed to verify weight: {}"


class TrafficRoutingReconciler(ABC):
    """Applies canary traffic weights to one data plane."""

    def __init__(self, rollout: Rollout):
        self.rollout = rollout

    @abstractmethod
    def type(self) -> str:
        pass

    @abstractmethod
    def update_hash(self, canary_hash: str, stable_hash: str, additional: List[WeightDestination]) -> None:
        pass

    @abstractmethod
    def set_weight(self, weight: int, additional: List[WeightDestination]) -> None:
        pass

    @abstractmethod
    def verify_weight(self, weight: int, additional: List[WeightDestination]) -> Optional[bool]:
        """
        Check that the data plane serves `weight`.

        Returns:
            True/False, or None when the backend cannot verify weights
        """

    def set_header_route(self, route: SetHeaderRoute) -> None:
        logger.debug(f"{self.type()} does not support header routes, ignoring '{route.name}'")

    def set_mirror_route(self, route: SetMirrorRoute) -> None:
        logger.debug(f"{self.type()} does not support mirror routes, ignoring '{route.name}'")

    def remove_managed_routes(self) -> None:
        pass


_BACKENDS: Dict[str, Callable[..., TrafficRoutingReconciler]] = {}


def register_backend(name: str):
    """Class decorator registering a traffic router under a trafficRouting key."""
    def wrap(cls):
        _BACKENDS[name] = cls
        return cls
    return wrap


def unregister_backend(name: str) -> None:
    _BACKENDS.pop(name, None)


@register_backend("webhook")
class WebhookTrafficRouter(TrafficRoutingReconciler):
    """Traffic router driving an external HTTP endpoint."""

    def __init__(self, rollout: Rollout, config, timeout: int = 30):
        super().__init__(rollout)
        self.url = config.url.rstrip("/")
        self.verify = config.verify
        self.headers = {"Content-Type": "application/json", **config.headers}
        self.timeout = timeout

    def type(self) -> str:
        return "Webhook"

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.url}{path}"
        try:
            response = requests.request(method, url, headers=self.headers, timeout=self.timeout, **kwargs)
            response.raise_for_status()
            return response
        except requests.RequestException as e:
            logger.error(f"❌ Traffic router request {method} {url} failed: {e}")
            raise TrafficRoutingError(f"traffic router request {method} {url} failed: {e}") from e

    def _payload(self, **extra) -> dict:
        return {"rollout": self.rollout.name, "namespace": self.rollout.namespace, **extra}

    def update_hash(self, canary_hash: str, stable_hash: str, additional: List[WeightDestination]) -> None:
        self._request(
            "POST",
            "/hash",
            json=self._payload(
                canaryHash=canary_hash,
                stableHash=stable_hash,
                additionalDestinations=[d.to_api() for d in additional],
            ),
        )

    def set_weight(self, weight: int, additional: List[WeightDestination]) -> None:
        self._request(
            "POST",
            "/weight",
            json=self._payload(weight=weight, additionalDestinations=[d.to_api() for d in additional]),
        )

    def verify_weight(self, weight: int, additional: List[WeightDestination]) -> Optional[bool]:
        if not self.verify:
            return None
        response = self._request("GET", "/weight", params={"rollout": self.rollout.name, "namespace": self.rollout.namespace})
        try:
            return int(response.json().get("weight", -1)) == weight
        except ValueError as e:
            raise TrafficRoutingError(f"traffic router returned an invalid weight: {e}") from e

    def set_header_route(self, route: SetHeaderRoute) -> None:
        self._request("POST", "/routes/header", json=self._payload(**route.to_api()))

    def set_mirror_route(self, route: SetMirrorRoute) -> None:
        self._request("POST", "/routes/mirror", json=self._payload(**route.to_api()))

    def remove_managed_routes(self) -> None:
        if not self.rollout.spec.strategy.canary.traffic_routing.managed_routes:
            return
        self._request("DELETE", "/routes", json=self._payload())


def new_traffic_routing_reconcilers(rollout: Rollout, settings: Settings) -> List[TrafficRoutingReconciler]:
    """
    Build the traffic routers configured on a rollout.

    Raises:
        TrafficRoutingError: If a configured plugin has no registered backend
    """
    canary = rollout.spec.strategy.canary
    if canary is None or canary.traffic_routing is None:
        return []
    routing = canary.traffic_routing
    reconcilers: List[TrafficRoutingReconciler] = []
    if routing.webhook is not None:
        reconcilers.append(_BACKENDS["webhook"](rollout, routing.webhook, timeout=settings.REQUEST_TIMEOUT_SECS))
    for name, config in routing.plugins.items():
        backend = _BACKENDS.get(name)
        if backend is None:
            raise TrafficRoutingError(f"traffic router plugin '{name}' is not registered")
        reconcilers.append(backend(rollout, config))
    return reconcilers


def calculate_weight_status(
    rollout: Rollout, canary_hash: str, stable_hash: str, desired_weight: int, additional: List[WeightDestination]
):
    """
    Compute status.canary.weights for a desired weight.

    Returns:
        Tuple of (modified compared to the persisted weights, new weights)
    """
    canary = rollout.spec.strategy.canary
    stable_weight = defaults.MAX_TRAFFIC_WEIGHT - desired_weight - sum(d.weight for d in additional)
    weights = TrafficWeights(
        canary=WeightDestination(weight=desired_weight, pod_template_hash=canary_hash, service_name=canary.canary_service),
        stable=WeightDestination(weight=stable_weight, pod_template_hash=stable_hash, service_name=canary.stable_service),
        additional=list(additional),
    )
    previous = rollout.status.canary.weights
    modified = (
        previous is None
        or previous.canary != weights.canary
        or previous.stable != weights.stable
        or previous.additional != weights.additional
    )
    return modified, weights


def traffic_weight_updated_message(previous: Optional[TrafficWeights], new: TrafficWeights) -> str:
    details = []
    if previous is None:
        details.append(f"to {new.canary.weight}")
    elif previous.canary.weight != new.canary.weight:
        details.append(f"from {previous.canary.weight} to {new.canary.weight}")
    if previous is not None and previous.additional != new.additional:
        details.append(f"additional: {[d.to_api() for d in new.additional]}")
    return TRAFFIC_WEIGHT_UPDATED_MESSAGE.format(", ".join(details))


def is_fully_promoted(rollout: Rollout) -> bool:
    return rollout.status.stable_rs == rollout.status.current_pod_hash


class TrafficRoutingMixin:
    """Rollout context methods computing and applying the canary traffic weight."""

    def new_traffic_routing_reconcilers(self) -> List[TrafficRoutingReconciler]:
        return new_traffic_routing_reconcilers(self.rollout, self.settings)

    def reconcile_traffic_routing(self) -> None:
        reconcilers = self.new_traffic_routing_reconcilers()
        if not reconcilers:
            self.log.info("No TrafficRouting Reconcilers found")
            self.new_status.canary.weights = None
            return

        self.log.info(f"Found {len(reconcilers)} TrafficRouting Reconcilers")
        for reconciler in reconcilers:
            self._reconcile_traffic_router(reconciler)

    def _reconcile_traffic_router(self, reconciler: TrafficRoutingReconciler) -> None:
        self.log.info(f"Reconciling TrafficRouting with type '{reconciler.type()}'")
        rollout = self.rollout
        canary = rollout.spec.strategy.canary
        step, index = rsutil.get_current_canary_step(rollout)
        desired_weight = 0
        destinations: List[WeightDestination] = []
        stable_hash = self.stable_rs.pod_template_hash if self.stable_rs is not None else ""
        canary_hash = self.new_rs.pod_template_hash if self.new_rs is not None else ""

        rolling_back, previous_hash = self._is_dynamically_rolling_back_to_stable()
        if rolling_back:
            # traffic is balanced between the previous desired replica set and stable
            desired_weight = self.calculate_desired_weight_on_abort_or_stable_rollback()
            canary_hash = previous_hash
        elif is_fully_promoted(rollout):
            reconciler.remove_managed_routes()
        elif self.pause_context.is_aborted():
            desired_weight = self.calculate_desired_weight_on_abort_or_stable_rollback()
            if not canary.dynamic_stable_scale or desired_weight == 0:
                self.ensure_service_targets(canary.canary_service, self.stable_rs)
            reconciler.remove_managed_routes()
        elif self.new_rs is None or self.new_rs.available_replicas == 0:
            destinations.extend(self.calculate_weight_destinations_from_experiment())
        elif rollout.status.promote_full:
            if canary.dynamic_stable_scale:
                replicas = defaults.replicas_or_default(rollout.spec.replicas)
                desired_weight = (defaults.MAX_TRAFFIC_WEIGHT * self.new_rs.available_replicas) // replicas
            elif rollout.status.canary.weights is not None:
                desired_weight = rollout.status.canary.weights.canary.weight
            reconciler.remove_managed_routes()
        elif index is not None:
            at_desired = rsutil.at_desired_replica_counts_for_canary(
                rollout, self.new_rs, self.stable_rs, self.other_rss, None
            )
            if not at_desired:
                # hold the previous step's weight until the replica sets catch up
                desired_weight = rsutil.get_previous_set_weight(rollout, index)
                destinations.extend(self.calculate_weight_destinations_from_experiment())
            elif index != len(canary.steps):
                desired_weight = rsutil.get_current_set_weight(rollout)
                destinations.extend(self.calculate_weight_destinations_from_experiment())
            else:
                desired_weight = defaults.MAX_TRAFFIC_WEIGHT

        revision = rsutil.rollout_revision(rollout)
        if step is not None and revision is not None and revision > 1:
            if step.set_header_route is not None:
                reconciler.set_header_route(step.set_header_route)
            if step.set_mirror_route is not None:
                reconciler.set_mirror_route(step.set_mirror_route)

        try:
            reconciler.update_hash(canary_hash, stable_hash, destinations)
            reconciler.set_weight(desired_weight, destinations)
        except TrafficRoutingError as e:
            self.recorder.warning(rollout, TRAFFIC_ROUTING_ERROR_REASON, str(e))
            raise

        modified, weights = calculate_weight_status(rollout, canary_hash, stable_hash, desired_weight, destinations)
        if modified:
            self.log.info(f"Previous weights: {rollout.status.canary.weights}")
            self.log.info(f"New weights: {weights}")
            self.recorder.normal(
                rollout,
                TRAFFIC_WEIGHT_UPDATED_REASON,
                traffic_weight_updated_message(rollout.status.canary.weights, weights),
            )
            self.new_status.canary.weights = weights
        elif self.new_status.canary.weights is None:
            self.new_status.canary.weights = weights

        try:
            verified = reconciler.verify_weight(desired_weight, destinations)
        except TrafficRoutingError as e:
            self.new_status.canary.weights.verified = None
            self.recorder.warning(rollout, WEIGHT_VERIFY_ERROR_REASON, WEIGHT_VERIFY_ERROR_MESSAGE.format(e))
            return
        self.new_status.canary.weights.verified = verified

        index_str = str(index) if index is not None else "n/a"
        if verified is None:
            return
        if verified:
            self.log.info(f"Desired weight (stepIdx: {index_str}) {desired_weight} verified")
        else:
            self.log.info(f"Desired weight (stepIdx: {index_str}) {desired_weight} not yet verified")
            self.enqueue_after(self.settings.VERIFY_RETRY_INTERVAL_SECS)

    def _is_dynamically_rolling_back_to_stable(self):
        rollout = self.rollout
        canary = rollout.spec.strategy.canary
        if not is_fully_promoted(rollout) or canary.traffic_routing is None or not canary.dynamic_stable_scale:
            return False, ""
        weights = rollout.status.canary.weights
        if weights is None or self.new_rs is None:
            return False, ""
        previous_hash = weights.canary.pod_template_hash
        if previous_hash != self.new_rs.pod_template_hash:
            if self.new_rs.available_replicas < defaults.replicas_or_default(rollout.spec.replicas):
                return True, previous_hash
        return False, ""

    def calculate_desired_weight_on_abort_or_stable_rollback(self) -> int:
        rollout = self.rollout
        if not rollout.spec.strategy.canary.dynamic_stable_scale:
            return 0
        replicas = defaults.replicas_or_default(rollout.spec.replicas)
        available = self.stable_rs.available_replicas if self.stable_rs is not None else 0
        desired = defaults.MAX_TRAFFIC_WEIGHT - (defaults.MAX_TRAFFIC_WEIGHT * available) // max(replicas, 1)
        if rollout.status.canary.weights is not None:
            # never raise the canary weight again while stable availability flaps
            desired = min(desired, rollout.status.canary.weights.canary.weight)
        return desired

    def calculate_weight_destinations_from_experiment(self) -> List[WeightDestination]:
        step = rsutil.get_current_experiment_step(self.rollout)
        experiment = self.current_ex
        if step is None or experiment is None or experiment.phase != AnalysisPhase.RUNNING:
            return []
        weights = {t.name: t.weight for t in step.templates}
        destinations = []
        for status in experiment.template_statuses:
            weight = weights.get(status.get("name"))
            if weight is None:
                continue
            destinations.append(
                WeightDestination(
                    weight=weight,
                    service_name=status.get("serviceName", ""),
                    pod_template_hash=status.get("podTemplateHash", ""),
                )
            )
        return destinations

