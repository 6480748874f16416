"""
Canary strategy state machine.
"""
import logging
from typing import Optional

from rollout_controller import defaults
from rollout_controller import replicaset_util as rsutil
from rollout_controller.pause import get_pause_condition
from rollout_controller.rollout_types import AnalysisPhase, CanaryStep, LabelSelector, PauseReason

logger = logging.getLogger(__name__)

SKIP_STEPS_REASON = "SkipSteps"
SKIP_STEPS_MESSAGE = "Rollback to stable ReplicaSets"
STEP_COMPLETED_REASON = "RolloutStepCompleted"
STEP_COMPLETED_MESSAGE = "Rollout step {}/{} completed ({})"


def format_label_selector(selector: Optional[LabelSelector]) -> str:
    if selector is None:
        return ""
    return ",".join(f"{k}={v}" for k, v in sorted(selector.match_labels.items()))


def canary_step_string(step: CanaryStep) -> str:
    """Short human readable description of a canary step, used in step events."""
    if step.set_weight is not None:
        return f"setWeight: {step.set_weight}"
    if step.pause is not None:
        if step.pause.duration is not None:
            return f"pause: {step.pause.duration}"
        return "pause"
    if step.set_canary_scale is not None:
        scale = step.set_canary_scale
        if scale.replicas is not None:
            return f"setCanaryScale{{replicas: {scale.replicas}}}"
        if scale.weight is not None:
            return f"setCanaryScale{{weight: {scale.weight}}}"
        return "setCanaryScale{matchTrafficWeight: true}"
    if step.experiment is not None:
        return "experiment"
    if step.analysis is not None:
        return "analysis"
    if step.set_header_route is not None:
        return f"setHeaderRoute: {step.set_header_route.name}"
    if step.set_mirror_route is not None:
        return f"setMirrorRoute: {step.set_mirror_route.name}"
    return "unknown"


class CanaryMixin:
    """Rollout context methods driving a canary update step by step."""

    def rollout_canary(self) -> None:
        if rsutil.pod_template_or_steps_changed(self.rollout, self.new_rs):
            self.new_rs = self.get_all_replica_sets_and_sync_revision(False)
            self.sync_rollout_status_canary()
            return

        self.new_rs = self.get_all_replica_sets_and_sync_revision(True)
        self.reconcile_restart()
        self.reconcile_ephemeral_metadata()
        self.reconcile_revision_history_limit(self.other_rss)
        self.reconcile_stable_and_canary_service()
        self.reconcile_traffic_routing()
        self.reconcile_experiments()
        self.reconcile_analysis_runs()

        if self.pause_context.has_add_pause():
            self.log.info("Detected pause due to inconclusive AnalysisRun")
            self.sync_rollout_status_canary()
            return

        if self.reconcile_canary_replica_sets():
            self.log.info("Not finished reconciling ReplicaSets")
            self.sync_rollout_status_canary()
            return

        if self.reconcile_canary_pause():
            self.log.info("Not finished reconciling Canary Pause")
        self.sync_rollout_status_canary()

    def reconcile_canary_stable_replica_set(self) -> bool:
        """
        Scale the stable replica set.

        A traffic-routed canary sizes stable from the weights persisted by the previous
        pass, so stable only shrinks once the data plane has moved traffic off it.
        """
        if not rsutil.check_stable_rs_exists(self.new_rs, self.stable_rs):
            self.log.info("No StableRS exists to reconcile or matches newRS")
            return False
        if self.rollout.spec.strategy.canary.traffic_routing is None:
            _, desired = rsutil.calculate_replica_counts_for_basic_canary(
                self.rollout, self.new_rs, self.stable_rs, self.other_rss
            )
        else:
            _, desired = rsutil.calculate_replica_counts_for_traffic_routed_canary(
                self.rollout, self.rollout.status.canary.weights
            )
        scaled, _ = self.scale_replica_set_and_record_event(self.stable_rs, desired)
        return scaled

    def reconcile_canary_replica_sets(self) -> bool:
        """
        Scale stable, then new, then the other replica sets, stopping after the first change.

        Returns:
            True when something was scaled this pass
        """
        halt = self.halt_progress()
        if halt:
            self.log.info(f"Skipping canary/stable ReplicaSet reconciliation: {halt}")
            return False
        self.remove_scale_down_deadlines()

        self.log.info("Reconciling StableRS")
        if self.reconcile_canary_stable_replica_set():
            self.log.info("Not finished reconciling stableRS")
            return True

        if self.reconcile_new_replica_set():
            self.log.info(f"Not finished reconciling new ReplicaSet '{self.new_rs.name}'")
            return True

        self.log.info("Reconciling old replica sets")
        if self.reconcile_other_replica_sets():
            self.log.info("Not finished reconciling old replica sets")
            return True
        return False

    def reconcile_canary_pause(self) -> bool:
        """
        Pause at a canary pause step.

        Returns:
            True while the rollout is held at a pause step
        """
        if self.rollout.spec.paused or self.rollout.status.promote_full:
            return False
        steps = self.rollout.spec.strategy.canary.steps
        if not steps:
            self.log.info("Rollout does not have any steps")
            return False
        step, index = rsutil.get_current_canary_step(self.rollout)
        if index >= len(steps):
            self.log.info("No Steps remain in the canary steps")
            return False
        if step.pause is None:
            return False

        self.log.info(f"Reconciling canary pause step (stepIndex: {index}/{len(steps)})")
        condition = get_pause_condition(self.rollout, PauseReason.CANARY_PAUSE_STEP)
        if condition is None:
            # controller_pause without a condition means the pause was resumed externally
            if not self.rollout.status.controller_pause:
                self.pause_context.add_pause_condition(PauseReason.CANARY_PAUSE_STEP)
            return True
        duration = step.pause.duration_seconds()
        if duration is None:
            return True
        self.check_enqueue_during_wait(condition.start_time, duration)
        return True

    def completed_current_canary_step(self) -> bool:
        if self.rollout.spec.paused:
            return False
        step, _ = rsutil.get_current_canary_step(self.rollout)
        if step is None:
            return False

        if step.pause is not None:
            return self.pause_context.completed_canary_pause_step(step.pause)
        weights = self.new_status.canary.weights
        if step.set_canary_scale is not None:
            return rsutil.at_desired_replica_counts_for_canary(
                self.rollout, self.new_rs, self.stable_rs, self.other_rss, weights
            )
        if step.set_weight is not None:
            if not rsutil.at_desired_replica_counts_for_canary(
                self.rollout, self.new_rs, self.stable_rs, self.other_rss, weights
            ):
                return False
            if not self.are_targets_verified():
                self.log.info(f"Step {step.set_weight} weight not yet verified")
                return False
            if weights is not None and weights.verified is False:
                return False
            self.log.info("Rollout has reached the desired state for the correct weight")
            return True
        if step.experiment is not None:
            return self.current_ex is not None and self.current_ex.phase == AnalysisPhase.SUCCESSFUL
        if step.analysis is not None:
            run = self.current_ars.get(defaults.ROLLOUT_TYPE_STEP)
            return run is not None and run.phase == AnalysisPhase.SUCCESSFUL
        if step.set_header_route is not None or step.set_mirror_route is not None:
            return True
        return False

    def sync_rollout_status_canary(self) -> None:
        """Advance the step index or promote, then persist the canary status."""
        rollout = self.rollout
        new_status = self.calculate_base_status()
        new_status.available_replicas = rsutil.available_count(self.all_rss)
        new_status.hpa_replicas = rsutil.actual_count(self.all_rss)
        new_status.selector = format_label_selector(rollout.spec.selector)

        step, index = rsutil.get_current_canary_step(rollout)
        new_status.stable_rs = rollout.status.stable_rs
        new_status.current_step_hash = rsutil.compute_step_hash(rollout)
        step_count = len(rollout.spec.strategy.canary.steps)

        if rsutil.pod_template_or_steps_changed(rollout, self.new_rs):
            self.reset_rollout_status(new_status)
            if self.new_rs is not None and rollout.status.stable_rs == self.new_rs.pod_template_hash:
                if step_count > 0:
                    self.recorder.normal(rollout, SKIP_STEPS_REASON, SKIP_STEPS_MESSAGE)
                    new_status.current_step_index = step_count
            new_status = self.calculate_rollout_conditions(new_status)
            self.persist_rollout_status(new_status)
            return

        if rollout.status.promote_full:
            self.pause_context.clear_pause_conditions()
            self.pause_context.remove_abort()
            if step_count > 0:
                index = step_count

        reason = self.should_full_promote(new_status)
        if reason:
            self.promote_stable(new_status, reason)
            new_status = self.calculate_rollout_conditions(new_status)
            self.persist_rollout_status(new_status)
            return

        if self.pause_context.is_aborted():
            if step_count > 0:
                new_status.current_step_index = step_count if new_status.stable_rs == new_status.current_pod_hash else 0
            new_status = self.calculate_rollout_conditions(new_status)
            self.persist_rollout_status(new_status)
            return

        if self.completed_current_canary_step():
            index += 1
            new_status.canary.current_step_analysis_run_status = None
            self.recorder.normal(
                rollout, STEP_COMPLETED_REASON, STEP_COMPLETED_MESSAGE.format(index, step_count, canary_step_string(step))
            )
            self.pause_context.remove_pause_condition(PauseReason.CANARY_PAUSE_STEP)

        new_status.current_step_index = index
        new_status = self.calculate_rollout_conditions(new_status)
        self.persist_rollout_status(new_status)
