from datetime import datetime, timedelta, timezone

import pytest

from rollout_controller import timeutil
from rollout_controller.config import Settings
from rollout_controller.controller import RolloutController
from rollout_controller.events import EventRecorder
from fakes import FakeKubeClient

FROZEN_NOW = datetime(2026, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current = self.current + timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def clock(monkeypatch):
    frozen = FrozenClock(FROZEN_NOW)
    monkeypatch.setattr(timeutil, "now", frozen)
    return frozen


@pytest.fixture
def kube():
    return FakeKubeClient()


@pytest.fixture
def test_settings():
    return Settings(K8S_NAMESPACE="", WORKERS=1)


@pytest.fixture
def recorder(kube):
    return EventRecorder(kube)


@pytest.fixture
def controller(kube, test_settings, recorder):
    return RolloutController(kube, test_settings, recorder)
