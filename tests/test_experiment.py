import pytest

from rollout_controller import defaults
from rollout_controller import replicaset_util as rsutil
from rollout_controller.errors import RolloutError
from rollout_controller.experiment import experiment_from_template
from rollout_controller.rollout_types import AnalysisPhase
from fakes import canary_rollout, converge, replica_set

KEY = "default/demo"
EXPERIMENT_STEP = {
    "experiment": {
        "duration": "5m",
        "templates": [
            {"name": "canary-preview", "specRef": "canary", "replicas": 1, "metadata": {"labels": {"role": "preview"}}},
            {"name": "baseline", "specRef": "stable", "weight": 10},
        ],
        "analyses": [{"name": "compare", "templateName": "compare", "args": [{"name": "x", "value": "y"}]}],
    }
}


def test_experiment_from_template():
    rollout = canary_rollout(steps=[EXPERIMENT_STEP])
    rollout.status.current_step_index = 0
    rollout.metadata.annotations[defaults.REVISION_ANNOTATION] = "3"
    stable = replica_set("demo-stable", "stablehash", 3)
    new = replica_set("demo-new", "newhash", 0)

    body = experiment_from_template(rollout, stable, new)

    pod_hash = rsutil.compute_pod_template_hash(rollout)
    assert body["metadata"]["name"] == f"demo-{pod_hash}-3-0"
    assert body["metadata"]["labels"] == {defaults.POD_TEMPLATE_HASH_LABEL: pod_hash}
    assert body["metadata"]["ownerReferences"][0]["uid"] == "uid-demo"
    assert body["spec"]["duration"] == "5m"

    preview, baseline = body["spec"]["templates"]
    assert preview["replicas"] == 1
    assert preview["selector"]["matchLabels"]["role"] == "preview"
    assert preview["template"]["metadata"]["labels"]["role"] == "preview"
    assert preview["selector"]["matchLabels"][defaults.POD_TEMPLATE_HASH_LABEL] == "newhash"
    assert baseline["selector"]["matchLabels"][defaults.POD_TEMPLATE_HASH_LABEL] == "stablehash"
    assert baseline["service"] == {}
    assert "replicas" not in baseline

    assert body["spec"]["analyses"] == [
        {"name": "compare", "templateName": "compare", "clusterScope": False, "args": [{"name": "x", "value": "y"}]}
    ]


def test_experiment_from_template_outside_experiment_step():
    rollout = canary_rollout(steps=[{"setWeight": 10}, EXPERIMENT_STEP])
    rollout.status.current_step_index = 0
    stable = replica_set("demo-stable", "stablehash", 3)
    assert experiment_from_template(rollout, stable, stable) is None


def test_experiment_from_template_rejects_unknown_spec_ref():
    step = {"experiment": {"templates": [{"name": "bad", "specRef": "preview"}]}}
    rollout = canary_rollout(steps=[step])
    rollout.status.current_step_index = 0
    stable = replica_set("demo-stable", "stablehash", 3)
    with pytest.raises(RolloutError):
        experiment_from_template(rollout, stable, stable)


# ---- Experiment steps ----
STEPS = [{"experiment": {"templates": [{"name": "canary-preview", "specRef": "canary", "replicas": 1}]}}]


def _at_experiment_step(kube, controller):
    kube.add_rollout(canary_rollout(replicas=2, steps=STEPS))
    converge(controller, KEY)
    kube.set_image(KEY, "demo:v2")
    converge(controller, KEY)
    assert len(kube.experiments) == 1
    return next(iter(kube.experiments.values()))


def test_experiment_step_creates_experiment(kube, controller, recorder):
    ex = _at_experiment_step(kube, controller)
    new_rs = kube.replica_set_by_revision(2)

    rollout = kube.rollout(KEY)
    assert ex.name.startswith(f"demo-{new_rs.pod_template_hash}-")
    assert ex.owner_uid == "uid-demo"
    assert rollout.status.current_step_index == 0
    assert rollout.status.canary.current_experiment == ex.name
    assert "ExperimentCreated" in recorder.reasons(KEY)
    assert kube.replica_set_by_revision(1).replicas == 2


def test_successful_experiment_completes_step(kube, controller):
    ex = _at_experiment_step(kube, controller)
    kube.experiments[ex.name].phase = AnalysisPhase.SUCCESSFUL
    converge(controller, KEY)

    rollout = kube.rollout(KEY)
    new_rs = kube.replica_set_by_revision(2)
    assert rollout.status.current_step_index == 1
    assert rollout.status.stable_rs == new_rs.pod_template_hash
    assert new_rs.replicas == 2


def test_failed_experiment_aborts(kube, controller):
    ex = _at_experiment_step(kube, controller)
    kube.experiments[ex.name].phase = AnalysisPhase.FAILED
    kube.experiments[ex.name].message = "baseline crashed"
    controller.sync_handler(KEY)

    rollout = kube.rollout(KEY)
    assert rollout.status.abort is True
    assert "baseline crashed" in rollout.status.message
