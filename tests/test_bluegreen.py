from rollout_controller import api, defaults
from rollout_controller.pause import get_pause_condition
from rollout_controller.rollout_types import PauseReason, RolloutPhase
from fakes import blue_green_rollout, converge

KEY = "default/demo"


def _deploy(kube, controller):
    kube.add_service("demo-active")
    kube.add_service("demo-preview")
    kube.add_rollout(blue_green_rollout(replicas=3, autoPromotionEnabled=False))
    converge(controller, KEY)


def _promote(kube):
    spec_patch, status_patch = api.promote_patches(kube.rollout(KEY))
    kube.patch_rollout_status("default", "demo", status_patch)
    if spec_patch is not None:
        kube.patch_rollout("default", "demo", spec_patch)


def _service_hash(kube, name):
    return kube.services[name].selector.get(defaults.POD_TEMPLATE_HASH_LABEL)


def test_initial_deploy_switches_both_services(kube, controller, recorder):
    _deploy(kube, controller)

    rollout = kube.rollout(KEY)
    rs = kube.replica_set_by_revision(1)
    assert rs.replicas == 3
    assert _service_hash(kube, "demo-active") == rs.pod_template_hash
    assert _service_hash(kube, "demo-preview") == rs.pod_template_hash
    assert kube.services["demo-active"].annotations[defaults.MANAGED_BY_ANNOTATION] == "demo"
    assert rollout.status.stable_rs == rs.pod_template_hash
    assert rollout.status.blue_green.active_selector == rs.pod_template_hash
    assert rollout.status.phase == RolloutPhase.HEALTHY
    assert "SwitchService" in recorder.reasons(KEY)


def test_update_waits_for_promotion(kube, controller):
    _deploy(kube, controller)
    kube.set_image(KEY, "demo:v2")
    converge(controller, KEY)

    rollout = kube.rollout(KEY)
    old = kube.replica_set_by_revision(1)
    new = kube.replica_set_by_revision(2)
    assert new.replicas == 3
    assert old.replicas == 3
    assert _service_hash(kube, "demo-preview") == new.pod_template_hash
    assert _service_hash(kube, "demo-active") == old.pod_template_hash
    assert get_pause_condition(rollout, PauseReason.BLUE_GREEN_PAUSE) is not None
    assert rollout.status.stable_rs == old.pod_template_hash
    assert rollout.status.phase == RolloutPhase.PAUSED


def test_promote_switches_active_and_delays_scale_down(kube, controller, clock):
    _deploy(kube, controller)
    kube.set_image(KEY, "demo:v2")
    converge(controller, KEY)
    _promote(kube)
    requeue = converge(controller, KEY)

    rollout = kube.rollout(KEY)
    old = kube.replica_set_by_revision(1)
    new = kube.replica_set_by_revision(2)
    assert _service_hash(kube, "demo-active") == new.pod_template_hash
    assert rollout.status.stable_rs == new.pod_template_hash
    assert rollout.status.pause_conditions == []
    assert old.replicas == 3
    assert defaults.SCALE_DOWN_DEADLINE_ANNOTATION in old.annotations
    assert requeue is not None and 0 < requeue <= 30

    clock.advance(31)
    converge(controller, KEY)
    old = kube.replica_set_by_revision(1)
    assert old.replicas == 0
    assert kube.replica_set_by_revision(2).replicas == 3
    assert kube.rollout(KEY).status.phase == RolloutPhase.HEALTHY


def test_missing_active_service_is_invalid(kube, controller):
    kube.add_service("demo-preview")
    kube.add_rollout(blue_green_rollout())
    requeue = controller.sync_handler(KEY)

    rollout = kube.rollout(KEY)
    assert requeue == 20
    assert rollout.status.phase == RolloutPhase.DEGRADED
    assert "demo-active" in rollout.status.message
    assert kube.replica_sets == {}


def test_auto_promotion_after_delay(kube, controller, clock):
    kube.add_service("demo-active")
    kube.add_service("demo-preview")
    kube.add_rollout(blue_green_rollout(replicas=3, autoPromotionSeconds=10))
    converge(controller, KEY)
    old = kube.replica_set_by_revision(1)

    kube.set_image(KEY, "demo:v2")
    requeue = converge(controller, KEY)
    new = kube.replica_set_by_revision(2)
    assert get_pause_condition(kube.rollout(KEY), PauseReason.BLUE_GREEN_PAUSE) is not None
    assert _service_hash(kube, "demo-active") == old.pod_template_hash
    assert 0 < requeue <= 10

    clock.advance(10)
    converge(controller, KEY)
    assert _service_hash(kube, "demo-active") == old.pod_template_hash

    clock.advance(1)
    converge(controller, KEY)
    rollout = kube.rollout(KEY)
    assert get_pause_condition(rollout, PauseReason.BLUE_GREEN_PAUSE) is None
    assert _service_hash(kube, "demo-active") == new.pod_template_hash
    assert rollout.status.stable_rs == new.pod_template_hash
