"""
Kubernetes event recorder for rollout transitions.
"""
import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Optional

from kubernetes.client.rest import ApiException

from rollout_controller import timeutil
from rollout_controller.rollout_types import Rollout

logger = logging.getLogger(__name__)

NORMAL = "Normal"
WARNING = "Warning"


@dataclass
class RecordedEvent:
    """An event emitted for a rollout."""
    rollout: str
    type: str
    reason: str
    message: str


class EventRecorder:
    """Emits events against rollouts and keeps the most recent ones in memory."""

    def __init__(self, client=None, component: str = "rollouts-controller", enabled: bool = True, history: int = 500):
        self.client = client
        self.component = component
        self.enabled = enabled
        self._recent: Deque[RecordedEvent] = deque(maxlen=history)
        self._lock = threading.Lock()

    def normal(self, rollout: Rollout, reason: str, message: str) -> None:
        self.event(rollout, NORMAL, reason, message)

    def warning(self, rollout: Rollout, reason: str, message: str) -> None:
        self.event(rollout, WARNING, reason, message)

    def event(self, rollout: Rollout, event_type: str, reason: str, message: str) -> None:
        if event_type == WARNING:
            logger.warning(f"⚠️ [{rollout.key}] Event(type={event_type}, reason={reason}): {message}")
        else:
            logger.info(f"[{rollout.key}] Event(type={event_type}, reason={reason}): {message}")

        with self._lock:
            self._recent.append(RecordedEvent(rollout.key, event_type, reason, message))

        if not self.enabled or self.client is None:
            return
        try:
            self.client.create_event(rollout.namespace, self._build(rollout, event_type, reason, message))
        except ApiException as e:
            # events are best effort, a failed write must not fail the reconciliation
            logger.warning(f"⚠️ Failed to record event {reason} for {rollout.key}: {e.reason}")

    def events_for(self, key: Optional[str] = None) -> List[RecordedEvent]:
        with self._lock:
            return [e for e in self._recent if key is None or e.rollout == key]

    def reasons(self, key: Optional[str] = None) -> List[str]:
        return [e.reason for e in self.events_for(key)]

    def _build(self, rollout: Rollout, event_type: str, reason: str, message: str) -> dict:
        now = timeutil.format_time(timeutil.now())
        return {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "name": f"{rollout.name}.{uuid.uuid4().hex[:16]}",
                "namespace": rollout.namespace,
            },
            "involvedObject": {
                "apiVersion": rollout.api_version,
                "kind": rollout.kind,
                "name": rollout.name,
                "namespace": rollout.namespace,
                "uid": rollout.metadata.uid,
            },
            "type": event_type,
            "reason": reason,
            "message": message,
            "source": {"component": self.component},
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }
