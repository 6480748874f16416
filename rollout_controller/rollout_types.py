"""
Pydantic models for the Rollout custom resource.

The same models parse the API payload (camelCase) and render status patches,
so every field carries a camelCase alias.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from rollout_controller.timeutil import parse_duration


class RolloutPhase(str, Enum):
    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    PAUSED = "Paused"
    PROGRESSING = "Progressing"


class PauseReason(str, Enum):
    CANARY_PAUSE_STEP = "CanaryPauseStep"
    BLUE_GREEN_PAUSE = "BlueGreenPause"
    INCONCLUSIVE_ANALYSIS = "InconclusiveAnalysisRun"
    INCONCLUSIVE_EXPERIMENT = "InconclusiveExperiment"


class AnalysisPhase(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCESSFUL = "Successful"
    FAILED = "Failed"
    ERROR = "Error"
    INCONCLUSIVE = "Inconclusive"
    TERMINATED = "Terminated"

    @property
    def completed(self) -> bool:
        return self in (
            AnalysisPhase.SUCCESSFUL,
            AnalysisPhase.FAILED,
            AnalysisPhase.ERROR,
            AnalysisPhase.INCONCLUSIVE,
            AnalysisPhase.TERMINATED,
        )


class KubeModel(BaseModel):
    """Base model: camelCase aliases, unknown fields ignored."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        extra = "ignore"

    def to_api(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# -----------------------------------------------------------------------------
# Spec
# -----------------------------------------------------------------------------
class LabelSelector(KubeModel):
    match_labels: Dict[str, str] = Field(default_factory=dict)
    match_expressions: List[Dict[str, Any]] = Field(default_factory=list)


class PodTemplateMetadata(KubeModel):
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)


class AnalysisTemplateRef(KubeModel):
    template_name: str
    cluster_scope: bool = False


class ValueFrom(KubeModel):
    pod_template_hash_value: Optional[str] = Field(default=None, description="Stable or Latest")
    field_ref: Optional[Dict[str, str]] = None


class AnalysisRunArgument(KubeModel):
    name: str
    value: Optional[str] = None
    value_from: Optional[ValueFrom] = None


class AnalysisRunMetadata(KubeModel):
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)


class RolloutAnalysis(KubeModel):
    templates: List[AnalysisTemplateRef] = Field(default_factory=list)
    args: List[AnalysisRunArgument] = Field(default_factory=list)
    dry_run: List[Dict[str, Any]] = Field(default_factory=list)
    measurement_retention: List[Dict[str, Any]] = Field(default_factory=list)
    analysis_run_metadata: AnalysisRunMetadata = Field(default_factory=AnalysisRunMetadata)


class RolloutAnalysisBackground(RolloutAnalysis):
    starting_step: Optional[int] = None


class RolloutPause(KubeModel):
    duration: Optional[Union[int, str]] = None

    def duration_seconds(self) -> Optional[int]:
        return parse_duration(self.duration)


class SetCanaryScale(KubeModel):
    weight: Optional[int] = None
    replicas: Optional[int] = None
    match_traffic_weight: bool = False


class RolloutExperimentTemplate(KubeModel):
    name: str
    spec_ref: str = Field(description="stable or canary")
    replicas: Optional[int] = None
    weight: Optional[int] = None
    metadata: PodTemplateMetadata = Field(default_factory=PodTemplateMetadata)


class RolloutExperimentStep(KubeModel):
    templates: List[RolloutExperimentTemplate] = Field(default_factory=list)
    duration: Optional[str] = None
    analyses: List[Dict[str, Any]] = Field(default_factory=list)


class SetHeaderRoute(KubeModel):
    name: str
    match: List[Dict[str, Any]] = Field(default_factory=list)


class SetMirrorRoute(KubeModel):
    name: str
    match: List[Dict[str, Any]] = Field(default_factory=list)
    percentage: Optional[int] = None


class CanaryStep(KubeModel):
    set_weight: Optional[int] = None
    pause: Optional[RolloutPause] = None
    analysis: Optional[RolloutAnalysis] = None
    experiment: Optional[RolloutExperimentStep] = None
    set_canary_scale: Optional[SetCanaryScale] = None
    set_header_route: Optional[SetHeaderRoute] = None
    set_mirror_route: Optional[SetMirrorRoute] = None

    def actions(self) -> List[str]:
        return [name for name, value in self if value is not None]


class WebhookTrafficRouting(KubeModel):
    url: str
    verify: bool = False
    headers: Dict[str, str] = Field(default_factory=dict)


class ManagedRoute(KubeModel):
    name: str


class RolloutTrafficRouting(KubeModel):
    webhook: Optional[WebhookTrafficRouting] = None
    plugins: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    managed_routes: List[ManagedRoute] = Field(default_factory=list)


class CanaryStrategy(KubeModel):
    canary_service: str = ""
    stable_service: str = ""
    steps: List[CanaryStep] = Field(default_factory=list)
    traffic_routing: Optional[RolloutTrafficRouting] = None
    max_unavailable: Optional[Union[int, str]] = None
    max_surge: Optional[Union[int, str]] = None
    analysis: Optional[RolloutAnalysisBackground] = None
    canary_metadata: Optional[PodTemplateMetadata] = None
    stable_metadata: Optional[PodTemplateMetadata] = None
    scale_down_delay_seconds: Optional[int] = None
    scale_down_delay_revision_limit: Optional[int] = None
    abort_scale_down_delay_seconds: Optional[int] = None
    dynamic_stable_scale: bool = False
    min_pods_per_replica_set: Optional[int] = None


class BlueGreenStrategy(KubeModel):
    active_service: str = ""
    preview_service: str = ""
    preview_replica_count: Optional[int] = None
    auto_promotion_enabled: Optional[bool] = None
    auto_promotion_seconds: int = 0
    max_unavailable: Optional[Union[int, str]] = None
    scale_down_delay_seconds: Optional[int] = None
    scale_down_delay_revision_limit: Optional[int] = None
    abort_scale_down_delay_seconds: Optional[int] = None
    pre_promotion_analysis: Optional[RolloutAnalysis] = None
    post_promotion_analysis: Optional[RolloutAnalysis] = None
    preview_metadata: Optional[PodTemplateMetadata] = None
    active_metadata: Optional[PodTemplateMetadata] = None


class RolloutStrategy(KubeModel):
    blue_green: Optional[BlueGreenStrategy] = None
    canary: Optional[CanaryStrategy] = None


class WorkloadRef(KubeModel):
    api_version: str = "apps/v1"
    kind: str = "Deployment"
    name: str = ""


class RollbackWindowSpec(KubeModel):
    revisions: int = 0


class AnalysisRunStrategy(KubeModel):
    successful_run_history_limit: Optional[int] = None
    unsuccessful_run_history_limit: Optional[int] = None


class RolloutSpec(KubeModel):
    replicas: Optional[int] = None
    selector: Optional[LabelSelector] = None
    template: Dict[str, Any] = Field(default_factory=dict)
    workload_ref: Optional[WorkloadRef] = None
    min_ready_seconds: int = 0
    revision_history_limit: Optional[int] = None
    paused: bool = False
    progress_deadline_seconds: Optional[int] = None
    progress_deadline_abort: bool = False
    restart_at: Optional[datetime] = None
    strategy: RolloutStrategy = Field(default_factory=RolloutStrategy)
    analysis: Optional[AnalysisRunStrategy] = None
    rollback_window: Optional[RollbackWindowSpec] = None


# -----------------------------------------------------------------------------
# Status
# -----------------------------------------------------------------------------
class PauseCondition(KubeModel):
    reason: PauseReason
    start_time: datetime


class RolloutCondition(KubeModel):
    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_update_time: Optional[datetime] = None
    last_transition_time: Optional[datetime] = None


class WeightDestination(KubeModel):
    weight: int = 0
    service_name: str = ""
    pod_template_hash: str = ""


class TrafficWeights(KubeModel):
    canary: WeightDestination = Field(default_factory=WeightDestination)
    stable: WeightDestination = Field(default_factory=WeightDestination)
    additional: List[WeightDestination] = Field(default_factory=list)
    verified: Optional[bool] = None


class RolloutAnalysisRunStatus(KubeModel):
    name: str
    status: AnalysisPhase
    message: str = ""


class CanaryStatus(KubeModel):
    current_step_analysis_run_status: Optional[RolloutAnalysisRunStatus] = None
    current_background_analysis_run_status: Optional[RolloutAnalysisRunStatus] = None
    current_experiment: str = ""
    weights: Optional[TrafficWeights] = None


class BlueGreenStatus(KubeModel):
    preview_selector: str = ""
    active_selector: str = ""
    scale_up_preview_check_point: bool = False
    pre_promotion_analysis_run_status: Optional[RolloutAnalysisRunStatus] = None
    post_promotion_analysis_run_status: Optional[RolloutAnalysisRunStatus] = None


class RolloutStatus(KubeModel):
    abort: bool = False
    aborted_at: Optional[datetime] = None
    pause_conditions: List[PauseCondition] = Field(default_factory=list)
    controller_pause: bool = False
    promote_full: bool = False
    current_pod_hash: str = ""
    current_step_hash: str = ""
    current_step_index: Optional[int] = None
    stable_rs: str = Field(default="", alias="stableRS")
    replicas: int = 0
    updated_replicas: int = 0
    ready_replicas: int = 0
    available_replicas: int = 0
    hpa_replicas: int = Field(default=0, alias="HPAReplicas")
    collision_count: Optional[int] = None
    observed_generation: str = ""
    restarted_at: Optional[datetime] = None
    selector: str = ""
    phase: Optional[RolloutPhase] = None
    message: str = ""
    conditions: List[RolloutCondition] = Field(default_factory=list)
    canary: CanaryStatus = Field(default_factory=CanaryStatus)
    blue_green: BlueGreenStatus = Field(default_factory=BlueGreenStatus)


class ObjectMeta(KubeModel):
    name: str = ""
    namespace: str = "default"
    uid: str = ""
    generation: int = 0
    resource_version: str = ""
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    deletion_timestamp: Optional[datetime] = None


class Rollout(KubeModel):
    """A Rollout resource: metadata, desired spec and last persisted status."""

    api_version: str = "argoproj.io/v1alpha1"
    kind: str = "Rollout"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: RolloutSpec = Field(default_factory=RolloutSpec)
    status: RolloutStatus = Field(default_factory=RolloutStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> str:
        return f"{self.metadata.namespace}/{self.metadata.name}"

    @classmethod
    def from_api(cls, obj: Dict[str, Any]) -> "Rollout":
        return cls.model_validate(obj)

    def deep_copy(self) -> "Rollout":
        return self.model_copy(deep=True)
