import pytest
from fastapi.testclient import TestClient

from rollout_controller import api
from rollout_controller.pause import get_pause_condition
from rollout_controller.rollout_types import PauseCondition, PauseReason
from fakes import blue_green_rollout, canary_rollout

BASE = "/api/rollouts/default/demo"
STEPS = [{"setWeight": 20}, {"pause": {}}, {"setWeight": 60}]


@pytest.fixture
def http(kube):
    api.configure(kube, None)
    yield TestClient(api.app)
    api.configure(None, None)


@pytest.fixture
def paused_canary(kube, clock):
    rollout = canary_rollout(steps=STEPS)
    rollout.status.current_step_index = 1
    rollout.status.controller_pause = True
    rollout.status.pause_conditions = [PauseCondition(reason=PauseReason.CANARY_PAUSE_STEP, start_time=clock())]
    kube.add_rollout(rollout)
    return rollout


def test_health(http):
    assert http.get("/health").json() == {"status": "healthy"}
    assert http.get("/api/health").json()["status"] == "healthy"
    assert http.get("/api/controller/status").json() == {"running": False}


def test_client_not_configured():
    api.configure(None, None)
    response = TestClient(api.app).get("/api/rollouts")
    assert response.status_code == 503


def test_list_and_get(http, kube):
    kube.add_rollout(canary_rollout(steps=STEPS))
    kube.add_rollout(blue_green_rollout(name="bg"))

    listed = {r["name"]: r for r in http.get("/api/rollouts").json()}
    assert listed["demo"]["strategy"] == "canary"
    assert listed["demo"]["steps"] == 3
    assert listed["bg"]["strategy"] == "blueGreen"
    assert "activeSelector" in listed["bg"]

    assert http.get(BASE).json()["name"] == "demo"
    assert http.get("/api/rollouts/default/missing").status_code == 404


def test_promote_moves_past_pause_step(http, kube, paused_canary):
    response = http.post(f"{BASE}/promote")
    assert response.status_code == 200
    assert response.json()["success"] is True

    rollout = kube.rollout()
    assert rollout.status.current_step_index == 2
    assert rollout.status.pause_conditions == []
    assert rollout.status.controller_pause is False


def test_promote_waits_on_inconclusive_analysis(clock):
    rollout = canary_rollout(steps=STEPS)
    rollout.status.current_step_index = 0
    rollout.status.pause_conditions = [PauseCondition(reason=PauseReason.INCONCLUSIVE_ANALYSIS, start_time=clock())]
    _, status_patch = api.promote_patches(rollout)
    assert status_patch == {"status": {"pauseConditions": [], "currentStepIndex": 0}}


def test_promote_unpauses_user_paused_rollout():
    rollout = canary_rollout(steps=STEPS)
    rollout.spec.paused = True
    spec_patch, _ = api.promote_patches(rollout)
    assert spec_patch == {"spec": {"paused": False}}


def test_promote_full(http, kube, paused_canary):
    assert http.post(f"{BASE}/promote-full").status_code == 200
    assert kube.rollout().status.promote_full is True

    _, status_patch = api.promote_patches(kube.rollout(), full=True)
    assert status_patch is None


def test_abort_and_retry(http, kube, paused_canary):
    http.post(f"{BASE}/abort")
    assert kube.rollout().status.abort is True

    http.post(f"{BASE}/retry")
    assert kube.rollout().status.abort is False


def test_pause_and_resume(http, kube, paused_canary):
    http.post(f"{BASE}/pause")
    assert kube.rollout().spec.paused is True
    assert http.get(BASE).json()["paused"] is True

    http.post(f"{BASE}/resume")
    assert kube.rollout().spec.paused is False
    assert get_pause_condition(kube.rollout(), PauseReason.CANARY_PAUSE_STEP) is not None


def test_restart_sets_restart_at(http, kube, paused_canary, clock):
    http.post(f"{BASE}/restart")
    assert kube.rollout().spec.restart_at == clock()


def test_actions_on_missing_rollout(http):
    assert http.post("/api/rollouts/default/missing/promote").status_code == 404
    assert http.post("/api/rollouts/default/missing/abort").status_code == 404
