from rollout_controller import defaults, validation
from fakes import blue_green_rollout, canary_rollout


def _messages(errs):
    return [e.message for e in errs]


def test_valid_rollouts():
    assert validation.validate_rollout(canary_rollout(steps=[{"setWeight": 20}, {"pause": {"duration": "30s"}}])) == []
    assert validation.validate_rollout(blue_green_rollout()) == []


def test_selector_must_match_template_labels():
    rollout = canary_rollout()
    rollout.spec.template["metadata"]["labels"] = {"app": "other"}
    assert validation.SELECTOR_MISMATCH_MESSAGE in _messages(validation.validate_rollout(rollout))


def test_step_must_have_exactly_one_action():
    errs = validation.validate_rollout(canary_rollout(steps=[{"setWeight": 20, "pause": {}}]))
    assert _messages(errs) == [validation.INVALID_STEP_MESSAGE]
    assert errs[0].field == "spec.strategy.canary.steps[0]"


def test_set_weight_range():
    errs = validation.validate_rollout(canary_rollout(steps=[{"setWeight": -1}]))
    assert _messages(errs) == [validation.INVALID_SET_WEIGHT_MESSAGE]


def test_set_canary_scale_cannot_mix_replicas_and_weight():
    errs = validation.validate_rollout(canary_rollout(steps=[{"setCanaryScale": {"replicas": 1, "weight": 10}}]))
    assert _messages(errs) == [validation.INVALID_CANARY_SCALE_MESSAGE]


def test_surge_and_unavailable_cannot_both_be_zero():
    errs = validation.validate_rollout(canary_rollout(maxSurge=0, maxUnavailable=0))
    assert _messages(errs) == [validation.INVALID_MAX_SURGE_MAX_UNAVAILABLE]


def test_blue_green_services_must_differ():
    errs = validation.validate_rollout(blue_green_rollout(active="demo", preview="demo"))
    assert _messages(errs) == [validation.DUPLICATED_SERVICES_MESSAGE]


def test_canary_services_must_differ():
    errs = validation.validate_rollout(canary_rollout(canaryService="demo", stableService="demo"))
    assert _messages(errs) == [validation.DUPLICATED_CANARY_SERVICES_MESSAGE]
    assert errs[0].field == "spec.strategy.canary.stableService"


def test_traffic_routing_needs_both_services():
    routing = {"plugins": {"recording": {}}}
    errs = validation.validate_rollout(canary_rollout(stableService="demo-stable", trafficRouting=routing))
    assert _messages(errs) == [validation.INVALID_TRAFFIC_ROUTING_MESSAGE]

    valid = canary_rollout(canaryService="demo-canary", stableService="demo-stable", trafficRouting=routing)
    assert validation.validate_rollout(valid) == []


def test_progress_deadline_must_exceed_min_ready():
    rollout = canary_rollout()
    rollout.spec.min_ready_seconds = 60
    rollout.spec.progress_deadline_seconds = 30
    assert "must be greater than minReadySeconds" in _messages(validation.validate_rollout(rollout))


def test_referenced_services(kube):
    rollout = canary_rollout(canaryService="demo-canary", stableService="demo-stable")
    kube.add_service("demo-canary")
    kube.add_service("demo-stable", annotations={defaults.MANAGED_BY_ANNOTATION: "someone-else"})

    errs = validation.validate_referenced_services(rollout, kube)
    assert [e.field for e in errs] == ["spec.strategy.canary.stableService"]

    del kube.services["demo-canary"]
    errs = validation.validate_referenced_services(rollout, kube)
    assert len(errs) == 2


def test_invalid_spec_message():
    errs = validation.validate_rollout(canary_rollout(steps=[{"setWeight": 200}]))
    message = validation.invalid_spec_message(canary_rollout(), errs)
    assert message.startswith('The Rollout "demo" is invalid: spec.strategy.canary.steps[0].setWeight')
