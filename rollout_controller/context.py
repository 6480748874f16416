"""
Per-pass rollout context.

A `RolloutContext` is built for every reconciliation of one rollout. It loads the
replica sets, analysis runs and experiments the rollout owns, classifies them, runs the
strategy and remembers when the rollout wants to be looked at again. Nothing on it
outlives the pass.
"""
import logging
from typing import Dict, List, Optional

from rollout_controller import analysis, timeutil
from rollout_controller import replicaset_util as rsutil
from rollout_controller.analysis import AnalysisMixin
from rollout_controller.bluegreen import BlueGreenMixin
from rollout_controller.canary import CanaryMixin
from rollout_controller.config import Settings, settings as default_settings
from rollout_controller.ephemeral_metadata import EphemeralMetadataMixin
from rollout_controller.events import EventRecorder
from rollout_controller.experiment import ExperimentMixin
from rollout_controller.kube_types import AnalysisRun, Experiment, ReplicaSet
from rollout_controller.pause import PauseContext, get_pause_condition
from rollout_controller.replicaset import ReplicaSetMixin
from rollout_controller.restart import RestartMixin
from rollout_controller.rollout_types import PauseReason, Rollout, RolloutAnalysisRunStatus, RolloutStatus
from rollout_controller.service import ServiceMixin
from rollout_controller.sync import SyncMixin
from rollout_controller.traffic_routing import TrafficRoutingMixin
from rollout_controller.validation import validate_referenced_services, validate_rollout

logger = logging.getLogger(__name__)


class RolloutLogAdapter(logging.LoggerAdapter):
    """Prefixes every message with the rollout key."""

    def process(self, msg, kwargs):
        return f"[{self.extra['rollout']}] {msg}", kwargs


class RolloutContext(
    SyncMixin,
    ReplicaSetMixin,
    CanaryMixin,
    BlueGreenMixin,
    AnalysisMixin,
    ExperimentMixin,
    TrafficRoutingMixin,
    ServiceMixin,
    RestartMixin,
    EphemeralMetadataMixin,
):
    """State of one reconciliation pass over a rollout."""

    def __init__(self, rollout: Rollout, client, recorder: Optional[EventRecorder] = None,
                 settings: Optional[Settings] = None):
        self.rollout = rollout
        self.client = client
        self.settings = settings or default_settings
        self.recorder = recorder or EventRecorder(client, enabled=self.settings.RECORD_EVENTS)
        self.log = RolloutLogAdapter(logger, {"rollout": rollout.key})

        self.pause_context = PauseContext(rollout, self.log)
        self.new_status = RolloutStatus(restarted_at=rollout.status.restarted_at)
        self.new_status.canary.weights = rollout.status.canary.weights
        self.target_verified: Optional[bool] = None
        self.new_rollout: Optional[Rollout] = None
        self.requeue_after: Optional[float] = None

        self.all_rss: List[ReplicaSet] = []
        self.new_rs: Optional[ReplicaSet] = None
        self.stable_rs: Optional[ReplicaSet] = None
        self.older_rss: List[ReplicaSet] = []
        self.other_rss: List[ReplicaSet] = []
        self.current_ars: Dict[str, AnalysisRun] = {}
        self.other_ars: List[AnalysisRun] = []
        self.current_ex: Optional[Experiment] = None
        self.other_exs: List[Experiment] = []

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------
    def load(self) -> "RolloutContext":
        """
        Read everything the rollout owns and classify it.

        Raises:
            ApiException: When listing owned objects fails
        """
        rollout = self.rollout
        selector = rollout.spec.selector.match_labels if rollout.spec.selector else None
        uid = rollout.metadata.uid
        self.all_rss = [
            rs for rs in self.client.list_replica_sets(rollout.namespace, selector) if rs.owner_uid == uid
        ]
        self.new_rs = rsutil.find_new_replica_set(rollout, self.all_rss)
        self.older_rss = rsutil.find_old_replica_sets(self.all_rss, self.new_rs)
        self.stable_rs = rsutil.get_stable_rs(rollout, self.new_rs, self.all_rss)
        self.other_rss = rsutil.get_other_rss(self.new_rs, self.stable_rs, self.all_rss)

        if rollout.spec.strategy.canary is not None:
            experiments = [ex for ex in self.client.list_experiments(rollout.namespace) if ex.owner_uid == uid]
            current_name = rollout.status.canary.current_experiment
            for ex in experiments:
                if current_name and ex.name == current_name:
                    self.current_ex = ex
                else:
                    self.other_exs.append(ex)

        runs = [run for run in self.client.list_analysis_runs(rollout.namespace) if run.owner_uid == uid]
        self.current_ars, self.other_ars = analysis.classify_analysis_runs(rollout, runs)

        if self.stable_rs is not None and rollout.status.stable_rs == rollout.status.current_pod_hash:
            if self.pause_context.is_aborted():
                self.log.warning("⚠️ Removing abort condition from fully promoted rollout")
                self.pause_context.remove_abort()
        return self

    # -------------------------------------------------------------------------
    # Reconcile
    # -------------------------------------------------------------------------
    def reconcile(self) -> Optional[float]:
        """
        Run one pass of the rollout's strategy.

        An invalid spec only records the InvalidSpec condition; the strategy is not run.

        Returns:
            Seconds after which the rollout should be reconciled again, or None
        """
        errs = validate_rollout(self.rollout)
        if not errs:
            errs = validate_referenced_services(self.rollout, self.client)
        if errs:
            # referenced objects may simply not exist yet
            self.enqueue_after(self.settings.INVALID_SPEC_REQUEUE_SECS)
            self.create_invalid_rollout_condition(errs)
            return self.requeue_after

        self.check_paused_conditions()
        if self.is_scaling_event():
            self.sync_replicas_only()
        elif self.rollout.spec.strategy.blue_green is not None:
            self.rollout_blue_green()
        else:
            self.rollout_canary()
        return self.requeue_after

    def enqueue_after(self, seconds: float) -> None:
        seconds = max(seconds, 0)
        if self.requeue_after is None or seconds < self.requeue_after:
            self.requeue_after = seconds

    def check_enqueue_during_wait(self, start_time, duration_seconds: int) -> None:
        """Requeue for the end of a wait when it ends before the next resync."""
        now = timeutil.now()
        expires = timeutil.parse_time(start_time) + timeutil.seconds(duration_seconds)
        remaining = (expires - now).total_seconds()
        if 0 < remaining < self.settings.RESYNC_PERIOD_SECS:
            self.log.info(f"Enqueueing Rollout in {remaining} seconds")
            self.enqueue_after(remaining)

    def halt_progress(self) -> str:
        if self.rollout.spec.paused:
            return "user paused"
        if get_pause_condition(self.rollout, PauseReason.INCONCLUSIVE_ANALYSIS) is not None:
            return "inconclusive analysis"
        return ""

    # -------------------------------------------------------------------------
    # Setters used by the mixins
    # -------------------------------------------------------------------------
    def set_current_analysis_runs(self, runs: Dict[str, AnalysisRun]) -> None:
        self.current_ars = runs
        for role in analysis.roles_for(self.rollout):
            run = runs.get(role.tag)
            if run is None:
                continue
            role.set_status(
                self.new_status,
                RolloutAnalysisRunStatus(name=run.name, status=run.phase, message=run.message),
            )

    def set_current_experiment(self, ex: Experiment) -> None:
        self.current_ex = ex
        self.new_status.canary.current_experiment = ex.name
        self.other_exs = [other for other in self.other_exs if other.name != ex.name]

    def set_restarted_at(self) -> None:
        self.new_status.restarted_at = self.rollout.spec.restart_at

    def _replace_replica_set(self, updated: ReplicaSet) -> None:
        """Swap a freshly written replica set into every list that holds the old copy."""

        def swap(items: List[ReplicaSet]) -> List[ReplicaSet]:
            return [updated if rs.name == updated.name else rs for rs in items]

        self.all_rss = swap(self.all_rss)
        self.older_rss = swap(self.older_rss)
        self.other_rss = swap(self.other_rss)
        if self.new_rs is not None and self.new_rs.name == updated.name:
            self.new_rs = updated
        if self.stable_rs is not None and self.stable_rs.name == updated.name:
            self.stable_rs = updated
