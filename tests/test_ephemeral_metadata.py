import json

from rollout_controller import defaults
from rollout_controller.ephemeral_metadata import (
    parse_existing_pod_metadata,
    strip_ephemeral_metadata,
    sync_ephemeral_pod_metadata,
    sync_replica_set_ephemeral_metadata,
)
from rollout_controller.rollout_types import PodTemplateMetadata
from fakes import canary_rollout, converge, replica_set

KEY = "default/demo"
CANARY = PodTemplateMetadata(labels={"role": "canary"})
STABLE = PodTemplateMetadata(labels={"role": "stable"}, annotations={"tier": "prod"})


def test_sync_injects_and_removes_only_owned_keys():
    labels, annotations, modified = sync_ephemeral_pod_metadata(
        {"app": "demo", "role": "stable"}, {"tier": "prod", "sidecar": "on"}, STABLE, CANARY
    )
    assert modified
    assert labels == {"app": "demo", "role": "canary"}
    assert annotations == {"sidecar": "on"}


def test_sync_is_noop_when_current():
    _, _, modified = sync_ephemeral_pod_metadata({"role": "canary"}, {}, CANARY, CANARY)
    assert not modified


def test_replica_set_remembers_injected_metadata():
    rs = replica_set("demo-a", "a", 1)
    updated, modified = sync_replica_set_ephemeral_metadata(rs, STABLE)
    assert modified
    assert updated.template["metadata"]["labels"]["role"] == "stable"
    assert updated.template["metadata"]["annotations"] == {"tier": "prod"}
    assert json.loads(updated.annotations[defaults.EPHEMERAL_METADATA_ANNOTATION]) == STABLE.to_api()
    assert parse_existing_pod_metadata(updated) == STABLE
    assert "role" not in rs.template["metadata"]["labels"]

    template = strip_ephemeral_metadata(updated)
    assert "role" not in template["metadata"]["labels"]
    assert "annotations" not in template["metadata"]


def test_unparseable_annotation_is_ignored():
    rs = replica_set("demo-a", "a", 1, annotations={defaults.EPHEMERAL_METADATA_ANNOTATION: "{not json"})
    assert parse_existing_pod_metadata(rs) is None


def test_canary_and_stable_roles_follow_the_update(kube, controller):
    steps = [{"setWeight": 50}, {"pause": {}}]
    kube.add_rollout(
        canary_rollout(
            replicas=2,
            steps=steps,
            canaryMetadata={"labels": {"role": "canary"}},
            stableMetadata={"labels": {"role": "stable"}},
        )
    )
    converge(controller, KEY)
    assert kube.replica_set_by_revision(1).template["metadata"]["labels"]["role"] == "stable"

    kube.set_image(KEY, "demo:v2")
    converge(controller, KEY)
    assert kube.replica_set_by_revision(2).template["metadata"]["labels"]["role"] == "canary"
    assert kube.replica_set_by_revision(1).template["metadata"]["labels"]["role"] == "stable"
