from datetime import datetime, timezone

from kubernetes import client

from rollout_controller import defaults
from rollout_controller.kube_client import KubeClient, analysis_run_from_api, label_selector
from rollout_controller.rollout_types import AnalysisPhase

CREATED = datetime(2026, 4, 1, tzinfo=timezone.utc)
OWNER = client.V1OwnerReference(api_version="argoproj.io/v1alpha1", kind="Rollout", name="demo", uid="uid-demo", controller=True)


def _offline_client():
    kube = KubeClient.__new__(KubeClient)
    kube.api_client = client.ApiClient()
    return kube


def test_label_selector():
    assert label_selector({}) is None
    assert label_selector({"b": "2", "a": "1"}) == "a=1,b=2"


def test_analysis_run_from_api():
    run = analysis_run_from_api(
        {
            "metadata": {
                "name": "demo-abc-2-1",
                "namespace": "default",
                "labels": {"rollout-type": "Step"},
                "creationTimestamp": "2026-04-01T00:00:00Z",
                "ownerReferences": [{"kind": "Rollout", "name": "demo", "uid": "uid-demo", "controller": True}],
            },
            "spec": {"terminate": True},
            "status": {"phase": "Failed", "message": "metric failed"},
        }
    )
    assert run.phase == AnalysisPhase.FAILED
    assert run.message == "metric failed"
    assert run.owner_uid == "uid-demo"
    assert run.terminate is True
    assert run.creation_timestamp == CREATED


def test_unknown_phase_reads_as_pending():
    run = analysis_run_from_api({"metadata": {"name": "x"}, "status": {"phase": "Sleeping"}})
    assert run.phase == AnalysisPhase.PENDING


def test_replica_set_conversion():
    rs = client.V1ReplicaSet(
        metadata=client.V1ObjectMeta(
            name="demo-abc",
            namespace="default",
            uid="uid-rs",
            labels={"app": "demo", defaults.POD_TEMPLATE_HASH_LABEL: "abc"},
            annotations={defaults.REVISION_ANNOTATION: "2"},
            owner_references=[OWNER],
            creation_timestamp=CREATED,
        ),
        spec=client.V1ReplicaSetSpec(
            replicas=3,
            selector=client.V1LabelSelector(match_labels={"app": "demo"}),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels={"app": "demo"}),
                spec=client.V1PodSpec(containers=[client.V1Container(name="app", image="demo:v1")]),
            ),
        ),
        status=client.V1ReplicaSetStatus(
            replicas=3,
            ready_replicas=2,
            available_replicas=2,
            conditions=[
                client.V1ReplicaSetCondition(
                    type="ReplicaFailure", status="True", reason="FailedCreate", message="quota exceeded"
                )
            ],
        ),
    )
    converted = _offline_client()._to_replica_set(rs)
    assert converted.pod_template_hash == "abc"
    assert converted.owner_uid == "uid-demo"
    assert converted.available_replicas == 2
    assert converted.template["spec"]["containers"][0]["image"] == "demo:v1"
    assert converted.failure_condition == {"reason": "FailedCreate", "message": "quota exceeded"}


def test_pod_conversion():
    pod = client.V1Pod(
        metadata=client.V1ObjectMeta(name="demo-abc-1", namespace="default", owner_references=[OWNER]),
        status=client.V1PodStatus(
            phase="Running",
            conditions=[client.V1PodCondition(type="Ready", status="True", last_transition_time=CREATED)],
        ),
    )
    converted = KubeClient._to_pod(pod)
    assert converted.ready is True
    assert converted.ready_since == CREATED
    assert converted.status == "Running"
    assert converted.owner_uid == "uid-demo"
