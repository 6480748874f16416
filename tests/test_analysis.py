from datetime import timedelta

import pytest
from kubernetes.client.rest import ApiException

from rollout_controller import analysis, defaults
from rollout_controller.errors import AnalysisRunError
from rollout_controller.rollout_types import AnalysisPhase, AnalysisRunArgument, RolloutPhase
from rollout_controller.kube_types import AnalysisRun
from fakes import CREATED_BASE, canary_rollout, converge, replica_set

KEY = "default/demo"
STEPS = [{"setWeight": 50}, {"analysis": {"templates": [{"templateName": "success-rate"}]}}]
SUCCESS_RATE = {
    "apiVersion": "argoproj.io/v1alpha1",
    "kind": "AnalysisTemplate",
    "metadata": {"name": "success-rate", "namespace": "default"},
    "spec": {
        "args": [{"name": "service-name"}],
        "metrics": [{"name": "success-rate", "provider": {"web": {"url": "http://metrics/{{args.service-name}}"}}}],
    },
}


@pytest.fixture
def at_analysis_step(kube, controller):
    kube.analysis_templates["success-rate"] = SUCCESS_RATE
    steps = [
        {"setWeight": 50},
        {"analysis": {"templates": [{"templateName": "success-rate"}], "args": [{"name": "service-name", "value": "demo"}]}},
    ]
    kube.add_rollout(canary_rollout(replicas=4, steps=steps))
    converge(controller, KEY)
    kube.set_image(KEY, "demo:v2")
    converge(controller, KEY)
    return kube


def _step_run(kube):
    assert len(kube.analysis_runs) == 1
    return next(iter(kube.analysis_runs.values()))


def test_analysis_step_creates_run(at_analysis_step):
    kube = at_analysis_step
    run = _step_run(kube)
    new_rs = kube.replica_set_by_revision(2)
    assert run.name == f"demo-{new_rs.pod_template_hash}-2-1"
    assert run.labels[defaults.ROLLOUT_TYPE_LABEL] == defaults.ROLLOUT_TYPE_STEP
    assert run.labels[defaults.STEP_INDEX_LABEL] == "1"
    assert run.owner_uid == "uid-demo"

    body = kube.analysis_run_bodies[run.name]
    assert body["spec"]["args"] == [{"name": "service-name", "value": "demo"}]
    assert body["metadata"]["annotations"][defaults.REVISION_ANNOTATION] == "2"

    rollout = kube.rollout(KEY)
    assert rollout.status.current_step_index == 1
    assert rollout.status.canary.current_step_analysis_run_status.name == run.name
    assert new_rs.replicas == 2
    assert kube.replica_set_by_revision(1).replicas == 2


def test_successful_analysis_advances_and_promotes(at_analysis_step, controller, recorder):
    kube = at_analysis_step
    run = _step_run(kube)
    kube.set_analysis_run_phase(run.name, AnalysisPhase.SUCCESSFUL)
    converge(controller, KEY)

    rollout = kube.rollout(KEY)
    new_rs = kube.replica_set_by_revision(2)
    assert "AnalysisRunSuccessful" in recorder.reasons(KEY)
    assert rollout.status.current_step_index == 2
    assert rollout.status.stable_rs == new_rs.pod_template_hash
    assert new_rs.replicas == 4
    assert kube.replica_set_by_revision(1).replicas == 0


def test_failed_analysis_aborts_update(at_analysis_step, controller, recorder, clock):
    kube = at_analysis_step
    run = _step_run(kube)
    kube.set_analysis_run_phase(run.name, AnalysisPhase.FAILED, "metric success-rate failed")
    controller.sync_handler(KEY)

    rollout = kube.rollout(KEY)
    assert rollout.status.abort is True
    assert rollout.status.aborted_at == clock()
    assert rollout.status.current_step_index == 0
    assert "metric success-rate failed" in rollout.status.message
    assert "AnalysisRunFailed" in recorder.reasons(KEY)
    assert "RolloutAborted" in recorder.reasons(KEY)

    converge(controller, KEY)
    rollout = kube.rollout(KEY)
    assert rollout.status.phase == RolloutPhase.DEGRADED
    assert kube.replica_set_by_revision(2).replicas == 0
    assert kube.replica_set_by_revision(1).replicas == 4
    assert len(kube.analysis_runs) == 1


def test_missing_template_fails_the_pass(kube, controller):
    kube.add_rollout(canary_rollout(replicas=4, steps=STEPS))
    converge(controller, KEY)
    kube.set_image(KEY, "demo:v2")

    with pytest.raises(ApiException):
        converge(controller, KEY)
    assert kube.analysis_runs == {}


# ---- Helpers ----
def _run(name, pod_hash, phase, minute):
    return AnalysisRun(
        name=name,
        namespace="default",
        phase=phase,
        labels={defaults.POD_TEMPLATE_HASH_LABEL: pod_hash},
        creation_timestamp=CREATED_BASE + timedelta(minutes=minute),
    )


def test_filter_to_delete_keeps_newest_per_outcome():
    rss = [replica_set("demo-a", "a", 1)]
    runs = [
        _run("ok-1", "a", AnalysisPhase.SUCCESSFUL, 1),
        _run("ok-2", "a", AnalysisPhase.SUCCESSFUL, 2),
        _run("failed-1", "a", AnalysisPhase.FAILED, 3),
        _run("orphan", "gone", AnalysisPhase.SUCCESSFUL, 4),
        _run("running", "a", AnalysisPhase.RUNNING, 5),
    ]
    names = {run.name for run in analysis.filter_to_delete(runs, rss, 1, 1)}
    assert names == {"ok-1", "orphan"}


def test_merge_analysis_templates_rejects_duplicate_metrics():
    with pytest.raises(AnalysisRunError):
        analysis.merge_analysis_templates([SUCCESS_RATE, SUCCESS_RATE], [{"name": "service-name", "value": "x"}])


def test_merge_analysis_templates_requires_every_arg():
    with pytest.raises(AnalysisRunError):
        analysis.merge_analysis_templates([SUCCESS_RATE], [])

    spec = analysis.merge_analysis_templates([SUCCESS_RATE], [{"name": "service-name", "value": "demo"}])
    assert spec["metrics"][0]["name"] == "success-rate"
    assert spec["args"] == [{"name": "service-name", "value": "demo"}]


def test_build_analysis_args_resolves_value_from():
    rollout = canary_rollout()
    rollout.metadata.labels["team"] = "agri"
    args = [
        AnalysisRunArgument(name="plain", value="1"),
        AnalysisRunArgument.model_validate({"name": "latest", "valueFrom": {"podTemplateHashValue": "Latest"}}),
        AnalysisRunArgument.model_validate({"name": "stable", "valueFrom": {"podTemplateHashValue": "Stable"}}),
        AnalysisRunArgument.model_validate(
            {"name": "team", "valueFrom": {"fieldRef": {"fieldPath": "metadata.labels['team']"}}}
        ),
        AnalysisRunArgument.model_validate({"name": "rollout", "valueFrom": {"fieldRef": {"fieldPath": "metadata.name"}}}),
    ]
    stable = replica_set("demo-s", "stablehash", 1)
    new = replica_set("demo-n", "newhash", 1)
    resolved = analysis.build_analysis_args(args, stable, new, rollout)
    assert resolved == [
        {"name": "plain", "value": "1"},
        {"name": "latest", "value": "newhash"},
        {"name": "stable", "value": "stablehash"},
        {"name": "team", "value": "agri"},
        {"name": "rollout", "value": "demo"},
    ]


def test_build_analysis_args_unknown_field():
    args = [AnalysisRunArgument.model_validate({"name": "x", "valueFrom": {"fieldRef": {"fieldPath": "spec.nope"}}})]
    with pytest.raises(AnalysisRunError):
        analysis.build_analysis_args(args, None, None, canary_rollout())


def test_role_naming_and_labels():
    role = analysis.ROLES[defaults.ROLLOUT_TYPE_PRE_PROMOTION]
    assert role.infix() == "pre"
    assert analysis.ROLES[defaults.ROLLOUT_TYPE_BACKGROUND].infix() == ""
    labels = analysis.ROLES[defaults.ROLLOUT_TYPE_STEP].labels("abc", step_index=3)
    assert labels == {
        defaults.POD_TEMPLATE_HASH_LABEL: "abc",
        defaults.ROLLOUT_TYPE_LABEL: defaults.ROLLOUT_TYPE_STEP,
        defaults.STEP_INDEX_LABEL: "3",
    }


def test_failed_background_analysis_aborts_update(kube, controller, recorder):
    kube.analysis_templates["success-rate"] = SUCCESS_RATE
    background = {
        "templates": [{"templateName": "success-rate"}],
        "args": [{"name": "service-name", "value": "demo"}],
    }
    kube.add_rollout(canary_rollout(replicas=4, steps=[{"setWeight": 50}, {"pause": {}}], analysis=background))
    converge(controller, KEY)
    assert kube.analysis_runs == {}

    kube.set_image(KEY, "demo:v2")
    converge(controller, KEY)
    run = _step_run(kube)
    assert run.labels[defaults.ROLLOUT_TYPE_LABEL] == defaults.ROLLOUT_TYPE_BACKGROUND
    assert kube.rollout(KEY).status.current_step_index == 1

    kube.set_analysis_run_phase(run.name, AnalysisPhase.FAILED, "error rate above threshold")
    converge(controller, KEY)

    rollout = kube.rollout(KEY)
    assert rollout.status.abort is True
    assert rollout.status.phase == RolloutPhase.DEGRADED
    assert "AnalysisRunFailed" in recorder.reasons(KEY)
    assert "RolloutAborted" in recorder.reasons(KEY)
    assert kube.replica_set_by_revision(2).replicas == 0
    assert kube.replica_set_by_revision(1).replicas == 4
