from datetime import timedelta

from rollout_controller import timeutil
from rollout_controller.kube_types import Pod
from rollout_controller.restart import is_pod_available
from fakes import CREATED_BASE, canary_rollout, converge

KEY = "default/demo"


def _pod(name, owner_uid, created, ready=True):
    return Pod(
        name=name,
        namespace="default",
        status="Running",
        labels={"app": "demo"},
        owner_uid=owner_uid,
        creation_timestamp=created,
        ready=ready,
    )


def _running_rollout(kube, controller):
    kube.add_rollout(canary_rollout(replicas=3))
    converge(controller, KEY)
    rs = kube.replica_set_by_revision(1)
    kube.pods = [_pod(f"demo-{i}", rs.uid, CREATED_BASE) for i in range(3)]
    return rs


def _request_restart(kube, at):
    kube.patch_rollout("default", "demo", {"spec": {"restartAt": timeutil.format_time(at)}})


def test_pod_availability(clock):
    assert is_pod_available(_pod("a", "x", CREATED_BASE), 0)
    assert not is_pod_available(_pod("a", "x", CREATED_BASE, ready=False), 0)

    pod = _pod("a", "x", CREATED_BASE)
    pod.ready_since = clock() - timedelta(seconds=10)
    assert not is_pod_available(pod, 30)
    assert is_pod_available(pod, 5)


def test_restart_evicts_one_pod_at_a_time(kube, controller, clock):
    rs = _running_rollout(kube, controller)
    _request_restart(kube, clock() - timedelta(minutes=1))

    requeue = controller.sync_handler(KEY)
    assert kube.evicted == ["demo-0"]
    assert requeue == 30

    # the replica set has not replaced the evicted pod yet
    controller.sync_handler(KEY)
    assert kube.evicted == ["demo-0"]

    for i in range(3):
        kube.pods.append(_pod(f"demo-new-{i}", rs.uid, clock()))
        controller.sync_handler(KEY)
    assert kube.evicted == ["demo-0", "demo-1", "demo-2"]

    converge(controller, KEY)
    rollout = kube.rollout(KEY)
    assert rollout.status.restarted_at == rollout.spec.restart_at


def test_future_restart_is_scheduled(kube, controller, clock):
    _running_rollout(kube, controller)
    _request_restart(kube, clock() + timedelta(seconds=45))

    requeue = controller.sync_handler(KEY)
    assert requeue == 45
    assert kube.evicted == []
