from typing import List, Optional

import pytest
import requests

from rollout_controller import api, defaults
from rollout_controller import traffic_routing
from rollout_controller.errors import TrafficRoutingError
from rollout_controller.rollout_types import TrafficWeights, WebhookTrafficRouting, WeightDestination
from fakes import canary_rollout, converge

KEY = "default/demo"
STEPS = [{"setWeight": 25}, {"pause": {}}]


class RecordingRouter(traffic_routing.TrafficRoutingReconciler):
    calls: list = []

    def __init__(self, rollout, config):
        super().__init__(rollout)
        self.config = config

    def type(self) -> str:
        return "Recording"

    def update_hash(self, canary_hash: str, stable_hash: str, additional: List[WeightDestination]) -> None:
        self.calls.append(("hash", canary_hash, stable_hash))

    def set_weight(self, weight: int, additional: List[WeightDestination]) -> None:
        self.calls.append(("weight", weight))

    def verify_weight(self, weight: int, additional: List[WeightDestination]) -> Optional[bool]:
        return None


@pytest.fixture
def router():
    traffic_routing.register_backend("recording")(RecordingRouter)
    RecordingRouter.calls = []
    yield RecordingRouter
    traffic_routing.unregister_backend("recording")


def _routed_rollout(**canary):
    return canary_rollout(
        replicas=4,
        steps=STEPS,
        canaryService="demo-canary",
        stableService="demo-stable",
        trafficRouting={"plugins": {"recording": {}}},
        **canary,
    )


def _deploy(kube, controller, **canary):
    kube.add_service("demo-canary")
    kube.add_service("demo-stable")
    kube.add_rollout(_routed_rollout(**canary))
    converge(controller, KEY)
    kube.set_image(KEY, "demo:v2")
    converge(controller, KEY)


def test_pause_step_holds_weight_and_keeps_stable_full(kube, controller, router):
    _deploy(kube, controller)

    rollout = kube.rollout(KEY)
    stable = kube.replica_set_by_revision(1)
    canary = kube.replica_set_by_revision(2)
    assert rollout.status.current_step_index == 1
    assert canary.replicas == 1
    assert stable.replicas == 4

    weights = rollout.status.canary.weights
    assert weights.canary.weight == 25
    assert weights.stable.weight == 75
    assert weights.canary.pod_template_hash == canary.pod_template_hash
    assert weights.stable.pod_template_hash == stable.pod_template_hash
    assert ("weight", 25) in router.calls
    assert router.calls[-1] == ("weight", 25)

    assert kube.services["demo-stable"].selector[defaults.POD_TEMPLATE_HASH_LABEL] == stable.pod_template_hash
    assert kube.services["demo-canary"].selector[defaults.POD_TEMPLATE_HASH_LABEL] == canary.pod_template_hash


def test_promote_sends_full_weight_once_canary_is_available(kube, controller, router):
    _deploy(kube, controller)
    kube.auto_ready = False
    _, status_patch = api.promote_patches(kube.rollout(KEY))
    kube.patch_rollout_status("default", "demo", status_patch)

    controller.sync_handler(KEY)
    canary = kube.replica_set_by_revision(2)
    assert canary.replicas == 4
    assert ("weight", 100) not in router.calls
    assert kube.rollout(KEY).status.stable_rs != canary.pod_template_hash

    kube.auto_ready = True
    kube.mark_ready(canary.name)
    converge(controller, KEY)

    rollout = kube.rollout(KEY)
    assert ("weight", 100) in router.calls
    assert rollout.status.stable_rs == canary.pod_template_hash
    assert router.calls[-1] == ("weight", 0)


def test_abort_keeps_canary_service_on_stable_during_scale_down_delay(kube, controller, router, clock):
    _deploy(kube, controller, abortScaleDownDelaySeconds=60)
    stable = kube.replica_set_by_revision(1)
    canary = kube.replica_set_by_revision(2)

    kube.patch_rollout_status("default", "demo", {"status": {"abort": True}})
    requeue = converge(controller, KEY)

    held = kube.replica_set_by_revision(2)
    assert held.replicas == 1
    assert defaults.SCALE_DOWN_DEADLINE_ANNOTATION in held.annotations
    assert 0 < requeue <= 60
    assert kube.services["demo-canary"].selector[defaults.POD_TEMPLATE_HASH_LABEL] == stable.pod_template_hash
    assert kube.services["demo-stable"].selector[defaults.POD_TEMPLATE_HASH_LABEL] == stable.pod_template_hash
    assert kube.rollout(KEY).status.canary.weights.canary.weight == 0

    # a resync of the settled rollout writes nothing
    writes = kube.writes
    controller.sync_handler(KEY)
    assert kube.writes == writes

    clock.advance(61)
    converge(controller, KEY)
    assert kube.replica_set_by_revision(2).replicas == 0
    assert kube.replica_set_by_revision(1).replicas == 4
    assert kube.services["demo-canary"].selector[defaults.POD_TEMPLATE_HASH_LABEL] != canary.pod_template_hash

def test_hash_update_failure_records_warning(kube, controller, recorder, router, monkeypatch):
    _deploy(kube, controller)

    def unreachable(self, canary_hash, stable_hash, additional):
        raise TrafficRoutingError("router unreachable")

    monkeypatch.setattr(router, "update_hash", unreachable)
    with pytest.raises(TrafficRoutingError):
        controller.sync_handler(KEY)
    assert recorder.reasons(KEY)[-1] == traffic_routing.TRAFFIC_ROUTING_ERROR_REASON



def test_unregistered_plugin_fails():
    rollout = canary_rollout(trafficRouting={"plugins": {"missing": {}}})
    with pytest.raises(TrafficRoutingError):
        traffic_routing.new_traffic_routing_reconcilers(rollout, None)


def test_no_traffic_routing_yields_no_reconcilers():
    assert traffic_routing.new_traffic_routing_reconcilers(canary_rollout(), None) == []


def test_calculate_weight_status_detects_changes():
    rollout = _routed_rollout()
    modified, weights = traffic_routing.calculate_weight_status(rollout, "new", "old", 30, [])
    assert modified
    assert weights.canary.weight == 30
    assert weights.stable.weight == 70
    assert weights.canary.service_name == "demo-canary"

    rollout.status.canary.weights = weights
    modified, _ = traffic_routing.calculate_weight_status(rollout, "new", "old", 30, [])
    assert not modified


def test_weight_updated_message():
    first = TrafficWeights(
        canary=WeightDestination(weight=10, pod_template_hash="new"),
        stable=WeightDestination(weight=90, pod_template_hash="old"),
    )
    assert traffic_routing.traffic_weight_updated_message(None, first) == "Traffic weight updated to 10"

    second = first.model_copy(deep=True)
    second.canary.weight = 40
    assert traffic_routing.traffic_weight_updated_message(first, second) == "Traffic weight updated from 10 to 40"


# ---- Webhook router ----
class FakeResponse:
    def __init__(self, payload=None, status_code=200):
        self.payload = payload or {}
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")

    def json(self):
        return self.payload


def _webhook_router(verify=True):
    config = WebhookTrafficRouting(url="http://router/", verify=verify, headers={"X-Token": "abc"})
    return traffic_routing.WebhookTrafficRouter(_routed_rollout(), config, timeout=5)


def test_webhook_router_posts_weight(monkeypatch):
    sent = []

    def fake_request(method, url, headers=None, timeout=None, **kwargs):
        sent.append((method, url, headers, timeout, kwargs))
        return FakeResponse({"weight": 40})

    monkeypatch.setattr(traffic_routing.requests, "request", fake_request)
    router = _webhook_router()
    router.set_weight(40, [])
    assert router.verify_weight(40, []) is True
    assert router.verify_weight(50, []) is False

    method, url, headers, timeout, kwargs = sent[0]
    assert (method, url, timeout) == ("POST", "http://router/weight", 5)
    assert headers["X-Token"] == "abc"
    assert kwargs["json"] == {"rollout": "demo", "namespace": "default", "weight": 40, "additionalDestinations": []}
    assert sent[1][0] == "GET"


def test_webhook_router_without_verification(monkeypatch):
    monkeypatch.setattr(traffic_routing.requests, "request", lambda *a, **k: FakeResponse())
    assert _webhook_router(verify=False).verify_weight(10, []) is None


def test_webhook_router_errors(monkeypatch):
    monkeypatch.setattr(traffic_routing.requests, "request", lambda *a, **k: FakeResponse(status_code=503))
    with pytest.raises(TrafficRoutingError):
        _webhook_router().set_weight(10, [])
