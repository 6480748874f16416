"""
Blue-green strategy state machine.
"""
import logging

from rollout_controller import defaults
from rollout_controller import replicaset_util as rsutil
from rollout_controller.analysis import skip_pre_promotion_analysis_run
from rollout_controller.canary import format_label_selector
from rollout_controller.kube_types import Service
from rollout_controller.pause import get_pause_condition
from rollout_controller.rollout_types import AnalysisPhase, PauseReason, Rollout
from rollout_controller.service import rollout_selector

logger = logging.getLogger(__name__)


def needs_blue_green_controller_pause(rollout: Rollout) -> bool:
    """True when the controller, rather than the user, owns the blue-green pause."""
    blue_green = rollout.spec.strategy.blue_green
    if blue_green.auto_promotion_enabled is False:
        return True
    return blue_green.auto_promotion_seconds > 0


class BlueGreenMixin:
    """Rollout context methods driving a blue-green update."""

    def rollout_blue_green(self) -> None:
        preview, active = self.get_preview_and_active_services()
        self.new_rs = self.get_all_replica_sets_and_sync_revision(True)

        # preview must follow the new replica set as soon as it exists
        self.reconcile_preview_service(preview)

        if rsutil.check_pod_spec_change(self.rollout, self.new_rs):
            self.sync_rollout_status_blue_green(preview, active)
            return

        self.reconcile_restart()
        self.reconcile_blue_green_replica_sets(active)
        self.reconcile_blue_green_pause(active)
        self.reconcile_active_service(active)
        self.reconcile_analysis_runs()
        self.reconcile_ephemeral_metadata()
        self.sync_rollout_status_blue_green(preview, active)

    def reconcile_blue_green_stable_replica_set(self, active: Service) -> None:
        pod_hash = active.selector.get(defaults.POD_TEMPLATE_HASH_LABEL)
        if pod_hash is None:
            return
        active_rs = rsutil.get_replica_set_by_template_hash(self.all_rss, pod_hash)
        if active_rs is None:
            self.log.warning("⚠️ There shouldn't be a nil active replicaset if the active Service selector is set")
            return
        self.log.info(f"Reconciling stable ReplicaSet '{active_rs.name}'")
        self.scale_replica_set_and_record_event(active_rs, defaults.replicas_or_default(self.rollout.spec.replicas))

    def reconcile_blue_green_replica_sets(self, active: Service) -> None:
        self.remove_scale_down_deadlines()
        self.reconcile_blue_green_stable_replica_set(active)
        self.reconcile_new_replica_set()
        self.reconcile_other_replica_sets()
        self.reconcile_revision_history_limit(self.other_rss)

    def is_blue_green_fast_tracked(self, active: Service) -> bool:
        """True when the pause should be skipped for this update."""
        if rsutil.has_scale_down_deadline(self.new_rs):
            self.log.info(f"Detected scale down annotation for ReplicaSet '{self.new_rs.name}' and will skip pause")
            return True
        if self.rollout.status.promote_full:
            return True
        pod_hash = active.selector.get(defaults.POD_TEMPLATE_HASH_LABEL)
        if pod_hash is None:
            return True
        return pod_hash == self.new_rs.pod_template_hash

    def ready_for_pause(self) -> bool:
        return rsutil.ready_for_pause(self.rollout, self.new_rs, self.all_rss)

    def completed_pre_promotion_analysis(self) -> bool:
        blue_green = self.rollout.spec.strategy.blue_green
        if blue_green is None or blue_green.pre_promotion_analysis is None:
            return True
        if skip_pre_promotion_analysis_run(self.rollout, self.new_rs):
            return True
        run = self.current_ars.get(defaults.ROLLOUT_TYPE_PRE_PROMOTION)
        return run is not None and run.phase == AnalysisPhase.SUCCESSFUL

    def reconcile_blue_green_pause(self, active: Service) -> None:
        """
        Pause or resume a blue-green rollout.

        The controller pauses once the preview is ready when auto promotion is disabled or
        delayed, and resumes when autoPromotionSeconds elapse. A pause condition removed
        while controller_pause is set means the user promoted the rollout.
        """
        if self.rollout.status.abort:
            return
        if not self.ready_for_pause():
            self.log.info(f"New RS '{self.new_rs.name}' is not ready to pause")
            return
        halt = self.halt_progress()
        if halt:
            self.log.info(f"skipping pause reconciliation: {halt}")
            return
        if self.is_blue_green_fast_tracked(active):
            self.log.debug("skipping pause: fast-tracked update")
            self.pause_context.remove_pause_condition(PauseReason.BLUE_GREEN_PAUSE)
            return
        if self.rollout.status.blue_green.scale_up_preview_check_point:
            self.log.debug("skipping pause: scaleUpPreviewCheckPoint passed")
            self.pause_context.remove_pause_condition(PauseReason.BLUE_GREEN_PAUSE)
            return
        if not needs_blue_green_controller_pause(self.rollout):
            self.pause_context.remove_pause_condition(PauseReason.BLUE_GREEN_PAUSE)
            return

        auto_promotion_seconds = self.rollout.spec.strategy.blue_green.auto_promotion_seconds
        self.log.info(f"reconciling pause (autoPromotionSeconds: {auto_promotion_seconds})")
        if not self.completed_pre_promotion_analysis():
            self.log.info("not ready for pause: prePromotionAnalysis incomplete")
            return

        condition = get_pause_condition(self.rollout, PauseReason.BLUE_GREEN_PAUSE)
        if condition is not None:
            if not self.pause_context.completed_blue_green_pause():
                self.log.info("pause incomplete")
                if auto_promotion_seconds > 0:
                    self.check_enqueue_during_wait(condition.start_time, auto_promotion_seconds)
            else:
                self.log.info("pause completed")
                self.pause_context.remove_pause_condition(PauseReason.BLUE_GREEN_PAUSE)
        elif not self.rollout.status.controller_pause:
            self.log.info("pausing")
            self.pause_context.add_pause_condition(PauseReason.BLUE_GREEN_PAUSE)

    def calculate_scale_up_preview_check_point(self) -> bool:
        """
        One-way switch allowing a preview-sized new replica set to scale to full size.

        Stays set once reached, until a template change or full promotion resets it.
        """
        preview_count = self.rollout.spec.strategy.blue_green.preview_replica_count
        if preview_count is None:
            return False
        if self.rollout.status.blue_green.scale_up_preview_check_point:
            return True
        if not self.completed_pre_promotion_analysis() or not self.pause_context.completed_blue_green_pause():
            return False
        available = rsutil.available_count([self.new_rs])
        reached = preview_count == available
        if reached:
            self.log.info(f"setting scaleUpPreviewCheckPoint to {reached}: preview replica count availability is {reached}")
        return reached

    def sync_rollout_status_blue_green(self, preview, active: Service) -> None:
        new_status = self.calculate_base_status()
        new_status.stable_rs = self.rollout.status.stable_rs

        if rsutil.check_pod_spec_change(self.rollout, self.new_rs):
            self.reset_rollout_status(new_status)
        if self.rollout.status.promote_full or self.is_rollback_within_window():
            self.pause_context.clear_pause_conditions()
            self.pause_context.remove_abort()

        previous = self.rollout.status.blue_green
        preview_selector = rollout_selector(preview)
        if preview_selector != previous.preview_selector:
            self.log.info(f"Updating preview selector ({previous.preview_selector} -> {preview_selector})")
        new_status.blue_green.preview_selector = preview_selector

        active_selector = rollout_selector(active)
        if active_selector != previous.active_selector:
            self.log.info(f"Updating active selector ({previous.active_selector} -> {active_selector})")
        new_status.blue_green.active_selector = active_selector

        reason = self.should_full_promote(new_status)
        if reason:
            self.promote_stable(new_status, reason)
        else:
            new_status.blue_green.scale_up_preview_check_point = self.calculate_scale_up_preview_check_point()

        active_rs = rsutil.get_replica_set_by_template_hash(self.all_rss, new_status.blue_green.active_selector)
        if active_rs is not None:
            new_status.hpa_replicas = active_rs.status_replicas
            new_status.selector = ",".join(f"{k}={v}" for k, v in sorted(active_rs.selector.items()))
            new_status.available_replicas = active_rs.available_replicas
            new_status.ready_replicas = active_rs.ready_replicas
        else:
            new_status.hpa_replicas = rsutil.actual_count(self.all_rss)
            new_status.selector = format_label_selector(self.rollout.spec.selector)
            new_status.available_replicas = rsutil.available_count(self.all_rss)

        new_status = self.calculate_rollout_conditions(new_status)
        self.persist_rollout_status(new_status)
