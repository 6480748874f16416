from datetime import timedelta

from rollout_controller import conditions
from rollout_controller.rollout_types import PauseCondition, PauseReason, RolloutPhase, RolloutStatus
from rollout_controller.sync import create_merge_patch, is_indefinite_step, status_patch
from fakes import blue_green_rollout, canary_rollout


# ---- Merge patches ----
def test_create_merge_patch():
    original = {"a": 1, "b": {"c": 2, "d": 3}, "e": [1, 2], "gone": True}
    modified = {"a": 1, "b": {"c": 2, "d": 4}, "e": [1], "new": "x"}
    assert create_merge_patch(original, modified) == {"b": {"d": 4}, "e": [1], "gone": None, "new": "x"}
    assert create_merge_patch(original, original) is None


def test_status_patch_only_carries_changes():
    previous = RolloutStatus(current_pod_hash="abc", stable_rs="abc", replicas=3)
    new_status = previous.model_copy(deep=True)
    assert status_patch(previous, new_status) is None

    new_status.current_pod_hash = "def"
    new_status.abort = True
    assert status_patch(previous, new_status) == {"status": {"currentPodHash": "def", "abort": True}}


def test_is_indefinite_step():
    rollout = canary_rollout(steps=[{"setWeight": 10}, {"pause": {}}])
    rollout.status.current_step_index = 0
    assert not is_indefinite_step(rollout)
    rollout.status.current_step_index = 1
    assert is_indefinite_step(rollout)


# ---- Conditions ----
def test_set_condition_keeps_transition_time(clock):
    status = RolloutStatus()
    first = conditions.new_condition(conditions.PROGRESSING, conditions.TRUE, "ReplicaSetUpdated", "one")
    assert conditions.set_condition(status, first)
    assert not conditions.set_condition(status, first.model_copy())

    clock.advance(60)
    second = conditions.new_condition(conditions.PROGRESSING, conditions.TRUE, "ReplicaSetUpdated", "two")
    assert conditions.set_condition(status, second)
    current = conditions.get_condition(status, conditions.PROGRESSING)
    assert current.message == "two"
    assert current.last_transition_time == first.last_transition_time
    assert current.last_update_time == clock()
    assert len(status.conditions) == 1

    conditions.remove_condition(status, conditions.PROGRESSING)
    assert status.conditions == []


def test_rollout_timed_out(clock):
    rollout = canary_rollout()
    status = RolloutStatus()
    assert not conditions.rollout_timed_out(rollout, status)

    progressing = conditions.new_condition(conditions.PROGRESSING, conditions.TRUE, "ReplicaSetUpdated", "")
    conditions.set_condition(status, progressing)
    clock.advance(599)
    assert not conditions.rollout_timed_out(rollout, status)
    clock.advance(2)
    assert conditions.rollout_timed_out(rollout, status)


def test_in_progress():
    assert conditions.in_progress([])
    failed = conditions.new_condition(conditions.PROGRESSING, conditions.FALSE, conditions.TIMED_OUT_REASON, "")
    assert not conditions.in_progress([failed])


# ---- Phase ----
def _healthy_status():
    return RolloutStatus(
        current_pod_hash="abc", stable_rs="abc", replicas=3, updated_replicas=3, available_replicas=3
    )


def test_phase_healthy():
    assert conditions.calculate_rollout_phase(canary_rollout().spec, _healthy_status()) == (RolloutPhase.HEALTHY, "")


def test_phase_degraded_wins(clock):
    status = _healthy_status()
    status.pause_conditions = [PauseCondition(reason=PauseReason.CANARY_PAUSE_STEP, start_time=clock())]
    aborted = conditions.new_condition(
        conditions.PROGRESSING, conditions.FALSE, conditions.ABORTED_REASON, "metric failed"
    )
    conditions.set_condition(status, aborted)
    assert conditions.calculate_rollout_phase(canary_rollout().spec, status) == (
        RolloutPhase.DEGRADED,
        "RolloutAborted: metric failed",
    )


def test_phase_paused(clock):
    rollout = canary_rollout()
    rollout.spec.paused = True
    assert conditions.calculate_rollout_phase(rollout.spec, _healthy_status()) == (
        RolloutPhase.PAUSED,
        "manually paused",
    )

    status = _healthy_status()
    status.pause_conditions = [PauseCondition(reason=PauseReason.CANARY_PAUSE_STEP, start_time=clock())]
    assert conditions.calculate_rollout_phase(canary_rollout().spec, status) == (
        RolloutPhase.PAUSED,
        "CanaryPauseStep",
    )


def test_phase_progressing_messages(clock):
    spec = canary_rollout().spec
    status = _healthy_status()
    status.updated_replicas = 1
    assert conditions.calculate_rollout_phase(spec, status)[1] == "more replicas need to be updated"

    status = _healthy_status()
    status.available_replicas = 2
    assert conditions.calculate_rollout_phase(spec, status)[1] == "updated replicas are still becoming available"

    status = _healthy_status()
    status.replicas = 4
    assert conditions.calculate_rollout_phase(spec, status)[1] == "old replicas are pending termination"

    status = _healthy_status()
    status.stable_rs = "old"
    assert conditions.calculate_rollout_phase(spec, status)[1] == "waiting for all steps to complete"

    restarting = canary_rollout()
    restarting.spec.restart_at = clock() - timedelta(minutes=1)
    assert conditions.calculate_rollout_phase(restarting.spec, _healthy_status())[1] == "rollout is restarting"


def test_phase_blue_green_cutover_pending():
    spec = blue_green_rollout().spec
    status = _healthy_status()
    assert conditions.calculate_rollout_phase(spec, status)[1] == "active service cutover pending"

    status.blue_green.active_selector = "abc"
    assert conditions.calculate_rollout_phase(spec, status) == (RolloutPhase.HEALTHY, "")
