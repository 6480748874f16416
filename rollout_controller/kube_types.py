"""
Type definitions for the Kubernetes objects a rollout owns or references.
"""
import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, List, Optional

from rollout_controller.defaults import POD_TEMPLATE_HASH_LABEL
from rollout_controller.rollout_types import AnalysisPhase


@dataclass
class OwnerReference:
    """Controller reference back to the owning rollout."""
    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool = True
    block_owner_deletion: bool = True

    def to_api(self) -> Dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": self.controller,
            "blockOwnerDeletion": self.block_owner_deletion,
        }


@dataclass
class ReplicaSet:
    """Kubernetes ReplicaSet representation (one replica group of a rollout)."""
    name: str
    namespace: str
    replicas: int
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    selector: Dict[str, str] = field(default_factory=dict)
    template: Dict[str, Any] = field(default_factory=dict)
    min_ready_seconds: int = 0
    status_replicas: int = 0
    ready_replicas: int = 0
    available_replicas: int = 0
    uid: str = ""
    owner_uid: Optional[str] = None
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None
    failure_condition: Optional[Dict[str, str]] = None
    resource_version: str = ""

    @property
    def pod_template_hash(self) -> str:
        return self.labels.get(POD_TEMPLATE_HASH_LABEL, "")

    def copy(self) -> "ReplicaSet":
        return copy.deepcopy(self)


@dataclass
class Service:
    """Kubernetes Service representation."""
    name: str
    namespace: str
    selector: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)

    @property
    def rollout_selector(self) -> str:
        return self.selector.get(POD_TEMPLATE_HASH_LABEL, "")


@dataclass
class Pod:
    """Kubernetes Pod representation."""
    name: str
    namespace: str
    status: str
    labels: Dict[str, str]
    annotations: Dict[str, str] = field(default_factory=dict)
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None
    owner_uid: Optional[str] = None
    ready: bool = False
    ready_since: Optional[datetime] = None


@dataclass
class AnalysisRun:
    """AnalysisRun custom resource representation."""
    name: str
    namespace: str
    phase: AnalysisPhase = AnalysisPhase.PENDING
    message: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    terminate: bool = False
    owner_uid: Optional[str] = None
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None
    spec: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Experiment:
    """Experiment custom resource representation."""
    name: str
    namespace: str
    phase: AnalysisPhase = AnalysisPhase.PENDING
    message: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    terminate: bool = False
    owner_uid: Optional[str] = None
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None
    spec: Dict[str, Any] = field(default_factory=dict)
    templates: List[Dict[str, Any]] = field(default_factory=list)
    template_statuses: List[Dict[str, Any]] = field(default_factory=list)


def controller_ref(rollout) -> OwnerReference:
    """Owner reference making `rollout` the controller of a child object."""
    return OwnerReference(
        api_version=rollout.api_version,
        kind=rollout.kind,
        name=rollout.name,
        uid=rollout.metadata.uid,
    )
