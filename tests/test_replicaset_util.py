from datetime import timedelta

from rollout_controller import defaults, timeutil
from rollout_controller import replicaset_util as rsutil
from rollout_controller.rollout_types import TrafficWeights, WeightDestination
from fakes import canary_rollout, replica_set


def _mid_update(rollout, index=0):
    rollout.status.current_pod_hash = "new"
    rollout.status.stable_rs = "old"
    rollout.status.current_step_index = index
    return rollout


# ---- Hashing ----
def test_pod_template_hash_is_stable_and_depends_on_collision_count():
    rollout = canary_rollout()
    first = rsutil.compute_pod_template_hash(rollout)
    assert first == rsutil.compute_pod_template_hash(canary_rollout())

    rollout.status.collision_count = 1
    assert rsutil.compute_pod_template_hash(rollout) != first


def test_step_hash_changes_with_steps():
    one = canary_rollout(steps=[{"setWeight": 20}])
    two = canary_rollout(steps=[{"setWeight": 40}])
    assert rsutil.compute_step_hash(one) != rsutil.compute_step_hash(two)


# ---- Inventory ----
def test_find_new_replica_set_by_hash_label():
    rollout = canary_rollout()
    pod_hash = rsutil.compute_pod_template_hash(rollout)
    old = replica_set("demo-old", "old", 3, created_minutes=1)
    new = replica_set(f"demo-{pod_hash}", pod_hash, 0, created_minutes=2)
    assert rsutil.find_new_replica_set(rollout, [old, new]).name == new.name


def test_find_new_replica_set_falls_back_to_template_match():
    rollout = canary_rollout()
    legacy = replica_set("demo-legacy", "legacy", 3)
    assert rsutil.find_new_replica_set(rollout, [legacy]).name == "demo-legacy"


def test_stable_and_other_classification():
    rollout = canary_rollout()
    rollout.status.stable_rs = "stable"
    new = replica_set("demo-new", "new", 1, created_minutes=3)
    stable = replica_set("demo-stable", "stable", 3, created_minutes=2)
    older = replica_set("demo-older", "older", 0, created_minutes=1)
    all_rss = [older, stable, new]

    assert rsutil.get_stable_rs(rollout, new, all_rss).name == "demo-stable"
    assert [rs.name for rs in rsutil.get_other_rss(new, stable, all_rss)] == ["demo-older"]
    assert rsutil.check_stable_rs_exists(new, stable)
    assert not rsutil.check_stable_rs_exists(stable, stable)


def test_sort_by_revision_and_max_revision():
    a = replica_set("a", "a", 1, revision=3)
    b = replica_set("b", "b", 1, revision=10)
    c = replica_set("c", "c", 1, revision=1)
    assert [rs.name for rs in rsutil.sort_by_revision([a, b, c])] == ["c", "a", "b"]
    assert rsutil.max_revision([a, b, c]) == 10


def test_is_saturated_requires_desired_annotation():
    rollout = canary_rollout(replicas=3)
    rs = replica_set("demo-a", "a", 3, annotations={defaults.DESIRED_REPLICAS_ANNOTATION: "3"})
    assert rsutil.is_saturated(rollout, rs)
    rs.available_replicas = 2
    assert not rsutil.is_saturated(rollout, rs)
    assert not rsutil.is_saturated(rollout, replica_set("demo-b", "b", 3))


# ---- Surge / unavailability ----
def test_scaled_int_or_percent_rounding():
    assert rsutil.scaled_int_or_percent("33%", 10, True) == 4
    assert rsutil.scaled_int_or_percent("33%", 10, False) == 3
    assert rsutil.scaled_int_or_percent(2, 10, True) == 2
    assert rsutil.scaled_int_or_percent(None, 10, True) == 0


def test_resolve_fenceposts():
    assert rsutil.resolve_fenceposts(0, 0, 10) == (0, 1)
    assert rsutil.resolve_fenceposts("25%", "25%", 10) == (3, 2)


# ---- Canary step helpers ----
def test_current_set_weight_follows_last_weight_step():
    rollout = canary_rollout(steps=[{"setWeight": 20}, {"pause": {}}, {"setWeight": 60}])
    rollout.status.current_step_index = 1
    assert rsutil.get_current_set_weight(rollout) == 20

    rollout.status.current_step_index = 3
    assert rsutil.get_current_set_weight(rollout) == 100

    rollout.status.abort = True
    assert rsutil.get_current_set_weight(rollout) == 0


def test_current_set_weight_without_prior_weight_step():
    rollout = canary_rollout(steps=[{"pause": {}}, {"setWeight": 50}])
    rollout.status.current_step_index = 0
    assert rsutil.get_current_set_weight(rollout) == 0


def test_set_canary_scale_only_applies_with_traffic_routing():
    steps = [{"setCanaryScale": {"replicas": 2}}, {"setWeight": 10}]
    routed = canary_rollout(steps=steps, trafficRouting={"plugins": {"recording": {}}})
    assert rsutil.use_set_canary_scale(routed).replicas == 2
    assert rsutil.use_set_canary_scale(canary_rollout(steps=steps)) is None


# ---- Replica arithmetic ----
def test_basic_canary_first_scale_step():
    rollout = _mid_update(canary_rollout(replicas=10, steps=[{"setWeight": 10}]))
    new = replica_set("demo-new", "new", 0)
    stable = replica_set("demo-old", "old", 10)
    assert rsutil.calculate_replica_counts_for_basic_canary(rollout, new, stable, []) == (1, 9)


def test_basic_canary_without_stable_runs_everything_on_new():
    rollout = canary_rollout(replicas=4, steps=[{"setWeight": 50}])
    rollout.status.current_step_index = 0
    new = replica_set("demo-new", "new", 0)
    assert rsutil.calculate_replica_counts_for_basic_canary(rollout, new, None, []) == (4, 0)


def test_traffic_routed_canary_keeps_stable_at_full_size():
    rollout = _mid_update(
        canary_rollout(replicas=10, steps=[{"setWeight": 30}], trafficRouting={"plugins": {"recording": {}}})
    )
    assert rsutil.calculate_replica_counts_for_traffic_routed_canary(rollout, None) == (3, 10)


def test_dynamic_stable_scale_waits_for_traffic_to_move():
    rollout = _mid_update(
        canary_rollout(
            replicas=10,
            steps=[{"setWeight": 30}],
            trafficRouting={"plugins": {"recording": {}}},
            dynamicStableScale=True,
        )
    )
    applied = TrafficWeights(
        canary=WeightDestination(weight=0, pod_template_hash="new"),
        stable=WeightDestination(weight=100, pod_template_hash="old"),
    )
    assert rsutil.calculate_replica_counts_for_traffic_routed_canary(rollout, applied) == (3, 10)

    applied.stable.weight = 70
    assert rsutil.calculate_replica_counts_for_traffic_routed_canary(rollout, applied) == (3, 7)


def test_at_desired_replica_counts_for_basic_canary():
    rollout = _mid_update(canary_rollout(replicas=4, steps=[{"setWeight": 50}]))
    new = replica_set("demo-new", "new", 2)
    stable = replica_set("demo-old", "old", 2)
    assert rsutil.at_desired_replica_counts_for_canary(rollout, new, stable, [], None)

    stable.available_replicas = 1
    assert not rsutil.at_desired_replica_counts_for_canary(rollout, new, stable, [], None)


# ---- Deadlines and restarts ----
def test_time_remaining_before_scale_down_deadline(clock):
    deadline = timeutil.format_time(clock() + timedelta(seconds=30))
    rs = replica_set("demo-old", "old", 3, annotations={defaults.SCALE_DOWN_DEADLINE_ANNOTATION: deadline})
    assert rsutil.time_remaining_before_scale_down_deadline(rs) == timedelta(seconds=30)

    clock.advance(31)
    assert rsutil.time_remaining_before_scale_down_deadline(rs) is None
    assert rsutil.time_remaining_before_scale_down_deadline(replica_set("demo-x", "x", 1)) is None


def test_needs_restart(clock):
    rollout = canary_rollout()
    assert not rsutil.needs_restart(rollout)

    rollout.spec.restart_at = clock() - timedelta(minutes=1)
    assert rsutil.needs_restart(rollout)

    rollout.status.restarted_at = rollout.spec.restart_at
    assert not rsutil.needs_restart(rollout)
