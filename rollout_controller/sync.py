"""
Replica set inventory sync and rollout status persistence.

Shared by both strategies: creates the replica set for the current pod template, keeps
revisions in step, compiles conditions and writes the status back as a merge patch.
"""
import copy
import json
import logging
from typing import Any, Dict, List, Optional

from kubernetes.client.rest import ApiException

from rollout_controller import conditions, defaults, timeutil
from rollout_controller import replicaset_util as rsutil
from rollout_controller.ephemeral_metadata import strip_ephemeral_metadata, sync_replica_set_ephemeral_metadata
from rollout_controller.errors import ReplicaSetCollisionError
from rollout_controller.kube_types import ReplicaSet, controller_ref
from rollout_controller.replicaset import set_new_replica_set_annotations
from rollout_controller.rollout_types import AnalysisPhase, RolloutCondition, RolloutStatus
from rollout_controller.validation import invalid_spec_message

logger = logging.getLogger(__name__)

_MISSING = object()


def create_merge_patch(original: Any, modified: Any) -> Optional[Dict[str, Any]]:
    """
    JSON merge patch turning `original` into `modified`.

    Dicts are diffed key by key, keys missing from `modified` become null and any
    other value (lists included) is replaced wholesale.

    Returns:
        Patch dict, or None when the documents are equal
    """
    if not isinstance(original, dict) or not isinstance(modified, dict):
        return None if original == modified else modified
    patch: Dict[str, Any] = {}
    for key in set(original) | set(modified):
        old = original.get(key, _MISSING)
        new = modified.get(key, _MISSING)
        if new is _MISSING:
            patch[key] = None
        elif old is _MISSING:
            patch[key] = new
        elif isinstance(old, dict) and isinstance(new, dict):
            nested = create_merge_patch(old, new)
            if nested is not None:
                patch[key] = nested
        elif old != new:
            patch[key] = new
    return patch or None


def status_patch(previous: RolloutStatus, new_status: RolloutStatus) -> Optional[Dict[str, Any]]:
    diff = create_merge_patch(previous.to_api(), new_status.to_api())
    if diff is None:
        return None
    return {"status": diff}


def is_indefinite_step(rollout) -> bool:
    """True at experiment, analysis and pause steps, which never count against the progress deadline."""
    step, _ = rsutil.get_current_canary_step(rollout)
    return step is not None and (
        step.experiment is not None or step.analysis is not None or step.pause is not None
    )


def replica_set_failure_condition(failure: Dict[str, str]) -> RolloutCondition:
    return conditions.new_condition(
        conditions.REPLICA_FAILURE,
        conditions.TRUE,
        failure.get("reason") or conditions.REPLICA_FAILURE_REASON,
        failure.get("message", ""),
    )


class SyncMixin:
    """Rollout context methods for replica set inventory and status persistence."""

    # -------------------------------------------------------------------------
    # Replica set inventory
    # -------------------------------------------------------------------------
    def get_all_replica_sets_and_sync_revision(self, create: bool) -> Optional[ReplicaSet]:
        """
        Return the new replica set with its revision synced, creating it when asked to.

        Args:
            create: Create the replica set for the current pod template when it is missing

        Returns:
            The new replica set, or None when it does not exist and was not created
        """
        new_rs = self.sync_replica_set_revision()
        if new_rs is None and create:
            new_rs = self.create_desired_replica_set()
        return new_rs

    def sync_replica_set_revision(self) -> Optional[ReplicaSet]:
        if self.new_rs is None:
            return None

        new_revision = str(rsutil.max_revision(self.older_rss) + 1)
        rs_copy = self.new_rs.copy()
        annotations_updated = set_new_replica_set_annotations(self.rollout, rs_copy, new_revision, True)
        min_ready_changed = rs_copy.min_ready_seconds != self.rollout.spec.min_ready_seconds
        if annotations_updated or min_ready_changed:
            rs_copy.min_ready_seconds = self.rollout.spec.min_ready_seconds
            updated = self.client.update_replica_set(rs_copy)
            self.log.info(f"Synced revision on ReplicaSet '{updated.name}' to '{new_revision}'")
            self._replace_replica_set(updated)
            return updated

        self.set_rollout_revision(rs_copy.annotations.get(defaults.REVISION_ANNOTATION, new_revision))

        if conditions.get_condition(self.rollout.status, conditions.PROGRESSING) is None:
            message = conditions.FOUND_NEW_RS_MESSAGE.format(rs_copy.name)
            condition = conditions.new_condition(
                conditions.PROGRESSING, conditions.TRUE, conditions.FOUND_NEW_RS_REASON, message
            )
            conditions.set_condition(self.rollout.status, condition)
            self._update_status_conditions()
            self.log.info(f"Initialized Progressing condition: {message}")
        return rs_copy

    def _update_status_conditions(self) -> None:
        patch = {"status": {"conditions": [c.to_api() for c in self.rollout.status.conditions]}}
        updated = self.client.patch_rollout_status(self.rollout.namespace, self.rollout.name, patch)
        self.rollout.status = updated.status
        self.new_rollout = updated

    def set_rollout_revision(self, revision: str) -> None:
        if self.rollout.metadata.annotations.get(defaults.REVISION_ANNOTATION) == revision:
            return
        patch = {"metadata": {"annotations": {defaults.REVISION_ANNOTATION: revision}}}
        updated = self.client.patch_rollout(self.rollout.namespace, self.rollout.name, patch)
        self.rollout.metadata.annotations[defaults.REVISION_ANNOTATION] = revision
        self.new_rollout = updated
        self.recorder.normal(
            self.rollout, conditions.ROLLOUT_UPDATED_REASON, conditions.ROLLOUT_UPDATED_MESSAGE.format(revision)
        )

    def create_desired_replica_set(self) -> ReplicaSet:
        """
        Create the replica set for the current pod template at zero replicas.

        A replica set of the same name that the rollout owns and whose template matches is
        adopted. Any other name clash bumps status.collisionCount so the next pass computes
        a different hash.

        Raises:
            ReplicaSetCollisionError: On a hash collision with a foreign replica set
            ApiException: When the create call fails for another reason
        """
        rollout = self.rollout
        new_revision = str(rsutil.max_revision(self.older_rss) + 1)
        pod_hash = rsutil.compute_pod_template_hash(rollout)
        template = copy.deepcopy(rollout.spec.template)
        template_meta = template.setdefault("metadata", {})
        labels = dict(template_meta.get("labels") or {})
        labels[defaults.POD_TEMPLATE_HASH_LABEL] = pod_hash
        template_meta["labels"] = labels
        selector = dict(rollout.spec.selector.match_labels) if rollout.spec.selector else {}
        selector[defaults.POD_TEMPLATE_HASH_LABEL] = pod_hash

        new_rs = ReplicaSet(
            name=f"{rollout.name}-{pod_hash}",
            namespace=rollout.namespace,
            replicas=0,
            labels=dict(labels),
            selector=selector,
            template=template,
            min_ready_seconds=rollout.spec.min_ready_seconds,
        )
        set_new_replica_set_annotations(rollout, new_rs, new_revision, False)

        strategy = rollout.spec.strategy
        if self.stable_rs is not None and self.stable_rs is not self.new_rs:
            metadata = strategy.canary.canary_metadata if strategy.canary else strategy.blue_green.preview_metadata
        else:
            metadata = strategy.canary.stable_metadata if strategy.canary else strategy.blue_green.active_metadata
        new_rs, _ = sync_replica_set_ephemeral_metadata(new_rs, metadata)

        already_exists = False
        try:
            created = self.client.create_replica_set(new_rs, controller_ref(rollout))
        except ApiException as e:
            if e.status != 409:
                message = conditions.FAILED_RS_CREATE_MESSAGE.format(new_rs.name, e.reason)
                self.recorder.warning(rollout, conditions.FAILED_RS_CREATE_REASON, message)
                condition = conditions.new_condition(
                    conditions.PROGRESSING, conditions.FALSE, conditions.FAILED_RS_CREATE_REASON, message
                )
                try:
                    self.patch_condition(rollout.status.model_copy(deep=True), condition)
                except ApiException as patch_error:
                    self.log.warning(f"⚠️ Error Patching Rollout: {patch_error.reason}")
                raise
            already_exists = True
            created = self.client.get_replica_set(new_rs.namespace, new_rs.name)
            owned = created.owner_uid == rollout.metadata.uid
            if not owned or not rsutil.pod_template_equal_ignore_hash(
                strip_ephemeral_metadata(created), rollout.spec.template
            ):
                previous = rollout.status.collision_count or 0
                self.client.patch_rollout_status(
                    rollout.namespace, rollout.name, {"status": {"collisionCount": previous + 1}}
                )
                rollout.status.collision_count = previous + 1
                self.log.warning(
                    f"⚠️ Found a hash collision - bumped collisionCount ({previous}->{previous + 1}) to resolve it"
                )
                raise ReplicaSetCollisionError(f"replica set '{new_rs.name}' already exists with a different template")
        else:
            self.log.info(f"✅ Created ReplicaSet {created.name}")

        self.set_rollout_revision(new_revision)

        if not already_exists:
            self.recorder.normal(
                rollout,
                conditions.NEW_RS_REASON,
                conditions.NEW_RS_DETAILED_MESSAGE.format(created.name, rsutil.revision(created)),
            )
            message = conditions.NEW_RS_MESSAGE.format(created.name)
            condition = conditions.new_condition(conditions.PROGRESSING, conditions.TRUE, conditions.NEW_RS_REASON, message)
            conditions.set_condition(rollout.status, condition)
            self._update_status_conditions()
            self.log.info(f"Set rollout condition: {message}")

        self.all_rss.append(created)
        return created

    # -------------------------------------------------------------------------
    # Scaling events
    # -------------------------------------------------------------------------
    def is_scaling_event(self) -> bool:
        """True when spec.replicas no longer matches the desired-replicas annotation of an active replica set."""
        self.new_rs = self.get_all_replica_sets_and_sync_revision(False)
        replicas = defaults.replicas_or_default(self.rollout.spec.replicas)
        for rs in rsutil.filter_active(self.all_rss):
            desired = rs.annotations.get(defaults.DESIRED_REPLICAS_ANNOTATION)
            if desired is None or not desired.isdigit():
                continue
            if int(desired) != replicas:
                return True
        return False

    def sync_replicas_only(self) -> None:
        """Rescale replica sets after a change of spec.replicas without advancing the update."""
        self.log.info("Syncing replicas only due to scaling event")
        self.new_rs = self.get_all_replica_sets_and_sync_revision(False)
        new_status = self.rollout.status.model_copy(deep=True)

        if self.rollout.spec.strategy.blue_green is not None:
            _, active = self.get_preview_and_active_services()
            self.reconcile_blue_green_replica_sets(active)
            active_rs = rsutil.get_replica_set_by_template_hash(self.all_rss, new_status.blue_green.active_selector)
            if active_rs is not None:
                new_status.hpa_replicas = active_rs.status_replicas
                new_status.available_replicas = active_rs.available_replicas
            else:
                new_status.hpa_replicas = rsutil.actual_count(self.all_rss)
                new_status.available_replicas = rsutil.available_count(self.all_rss)

        if self.rollout.spec.strategy.canary is not None:
            self.reconcile_canary_replica_sets()
            new_status.available_replicas = rsutil.available_count(self.all_rss)
            new_status.hpa_replicas = rsutil.actual_count(self.all_rss)

        self.persist_rollout_status(new_status)

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------
    def calculate_base_status(self) -> RolloutStatus:
        """Fields common to both strategies, computed from the replica set inventory."""
        previous = self.rollout.status
        if self.new_rs is None:
            current_pod_hash = rsutil.compute_pod_template_hash(self.rollout)
            self.log.info(f"Assuming {current_pod_hash} for new replicaset pod hash")
        else:
            current_pod_hash = self.new_rs.pod_template_hash

        new_status = self.new_status.model_copy(deep=True)
        new_status.current_pod_hash = current_pod_hash
        new_status.replicas = rsutil.actual_count(self.all_rss)
        new_status.updated_replicas = rsutil.actual_count([self.new_rs])
        new_status.ready_replicas = rsutil.ready_count(self.all_rss)
        new_status.collision_count = previous.collision_count
        new_status.conditions = [
            c.model_copy() for c in previous.conditions if c.type != conditions.INVALID_SPEC
        ]
        new_status.restarted_at = self.new_status.restarted_at
        new_status.promote_full = current_pod_hash != new_status.stable_rs and previous.promote_full
        return new_status

    def check_paused_conditions(self) -> None:
        """
        Keep the Progressing and Paused conditions in line with the pause state.

        A resumed rollout gets a fresh Progressing timestamp so time spent paused never
        counts against the progress deadline.
        """
        status = self.rollout.status
        progressing = conditions.get_condition(status, conditions.PROGRESSING)
        progressing_paused = progressing is not None and progressing.reason == conditions.PAUSED_REASON
        is_paused = bool(status.pause_conditions) or self.rollout.spec.paused
        abort_exists = progressing is not None and progressing.reason == conditions.ABORTED_REASON

        updated: List[RolloutCondition] = []
        if is_paused != progressing_paused and not abort_exists:
            if is_paused:
                updated.append(conditions.new_condition(
                    conditions.PROGRESSING, conditions.UNKNOWN, conditions.PAUSED_REASON, conditions.PAUSED_MESSAGE
                ))
            else:
                updated.append(conditions.new_condition(
                    conditions.PROGRESSING, conditions.UNKNOWN, conditions.RESUMED_REASON, conditions.RESUMED_MESSAGE
                ))

        if not status.abort and abort_exists:
            updated.append(conditions.new_condition(
                conditions.PROGRESSING, conditions.UNKNOWN, conditions.RETRY_REASON, conditions.RETRY_MESSAGE
            ))

        paused = conditions.get_condition(status, conditions.PAUSED)
        paused_true = paused is not None and paused.status == conditions.TRUE
        if is_paused != paused_true and not abort_exists:
            updated.append(conditions.new_condition(
                conditions.PAUSED,
                conditions.TRUE if is_paused else conditions.FALSE,
                conditions.PAUSED_REASON,
                conditions.PAUSED_MESSAGE,
            ))

        if not updated:
            return
        self.patch_condition(status.model_copy(deep=True), *updated)

    def patch_condition(self, new_status: RolloutStatus, *new_conditions: RolloutCondition) -> None:
        """Set conditions on a copy of the persisted status and patch the difference."""
        for condition in new_conditions:
            conditions.set_condition(new_status, condition)
        new_status.observed_generation = str(self.rollout.metadata.generation)
        new_status.phase, new_status.message = conditions.calculate_rollout_phase(self.rollout.spec, new_status)

        patch = status_patch(self.rollout.status, new_status)
        if patch is None:
            self.log.info("No status changes. Skipping patch")
            return
        self.new_rollout = self.client.patch_rollout_status(self.rollout.namespace, self.rollout.name, patch)
        self.log.info(f"Patched conditions: {json.dumps(patch)}")
        self.rollout.status = new_status

    def create_invalid_rollout_condition(self, errs) -> None:
        """Record the InvalidSpec condition for a rollout that failed validation."""
        message = invalid_spec_message(self.rollout, errs)
        new_status = self.rollout.status.model_copy(deep=True)
        previous = conditions.get_condition(new_status, conditions.INVALID_SPEC)
        changed = previous is None or previous.message != message
        if previous is not None and previous.message != message:
            conditions.remove_condition(new_status, conditions.INVALID_SPEC)
        self.log.error(f"❌ {message}")
        if self.rollout.status.observed_generation == str(self.rollout.metadata.generation) and not changed:
            return
        condition = conditions.new_condition(
            conditions.INVALID_SPEC, conditions.TRUE, conditions.INVALID_SPEC_REASON, message
        )
        self.patch_condition(new_status, condition)

    def calculate_rollout_conditions(self, new_status: RolloutStatus) -> RolloutStatus:
        """
        Compile the Healthy, Progressing, Available, ReplicaFailure and Completed conditions.

        A progress deadline that runs out sets Progressing to ProgressDeadlineExceeded and,
        with spec.progressDeadlineAbort, aborts the update.

        Args:
            new_status: Status compiled so far this pass

        Returns:
            The same status with its conditions updated
        """
        rollout = self.rollout
        is_paused = bool(rollout.status.pause_conditions) or rollout.spec.paused
        is_aborted = self.pause_context.is_aborted()

        became_unhealthy = False
        healthy_before = conditions.get_condition(rollout.status, conditions.HEALTHY)
        if not is_paused and conditions.rollout_healthy(rollout, new_status):
            conditions.set_condition(new_status, conditions.new_condition(
                conditions.HEALTHY, conditions.TRUE, conditions.HEALTHY_REASON, conditions.HEALTHY_MESSAGE
            ))
        elif healthy_before is not None:
            became_unhealthy = conditions.set_condition(new_status, conditions.new_condition(
                conditions.HEALTHY, conditions.FALSE, conditions.HEALTHY_REASON, conditions.NOT_HEALTHY_MESSAGE
            ))

        revision = rsutil.rollout_revision(rollout) or 0
        if is_aborted:
            message = conditions.ABORTED_MESSAGE.format(revision)
            if self.pause_context.abort_message:
                message = f"{message}: {self.pause_context.abort_message}"
            condition = conditions.new_condition(
                conditions.PROGRESSING, conditions.FALSE, conditions.ABORTED_REASON, message
            )
            if conditions.set_condition(new_status, condition):
                self.recorder.warning(rollout, conditions.ABORTED_REASON, message)

        current = conditions.get_condition(rollout.status, conditions.PROGRESSING)
        # always False: `current` is the Progressing condition itself
        is_healthy_rollout = (
            new_status.replicas == new_status.available_replicas
            and current is not None
            and current.reason == conditions.NEW_RS_AVAILABLE_REASON
            and current.type != conditions.PROGRESSING
        )
        if not is_healthy_rollout and not is_aborted:
            if conditions.rollout_healthy(rollout, new_status):
                rs_name = self.new_rs.name if self.new_rs is not None else ""
                conditions.set_condition(new_status, conditions.new_condition(
                    conditions.PROGRESSING,
                    conditions.TRUE,
                    conditions.NEW_RS_AVAILABLE_REASON,
                    conditions.RS_COMPLETED_MESSAGE.format(rs_name),
                ))
            elif conditions.rollout_progressing(rollout, new_status) or became_unhealthy:
                if self.new_rs is not None:
                    message = conditions.RS_PROGRESSING_MESSAGE.format(self.new_rs.name)
                else:
                    message = conditions.ROLLOUT_PROGRESSING_MESSAGE.format(rollout.name)
                reason = conditions.RS_UPDATED_REASON
                if new_status.stable_rs == new_status.current_pod_hash and became_unhealthy:
                    reason = conditions.RS_NOT_AVAILABLE_REASON
                    message = conditions.NOT_AVAILABLE_MESSAGE
                condition = conditions.new_condition(conditions.PROGRESSING, conditions.TRUE, reason, message)
                if current is not None:
                    if current.status == conditions.TRUE:
                        condition.last_transition_time = current.last_transition_time
                    conditions.remove_condition(new_status, conditions.PROGRESSING)
                conditions.set_condition(new_status, condition)
            elif not is_indefinite_step(rollout) and conditions.rollout_timed_out(rollout, new_status):
                if self.new_rs is not None:
                    message = conditions.RS_TIMED_OUT_MESSAGE.format(self.new_rs.name)
                else:
                    message = conditions.ROLLOUT_TIMED_OUT_MESSAGE.format(rollout.name)
                condition = conditions.new_condition(
                    conditions.PROGRESSING, conditions.FALSE, conditions.TIMED_OUT_REASON, message
                )
                changed = conditions.set_condition(new_status, condition)
                if rollout.spec.progress_deadline_abort and (changed or not self.pause_context.is_aborted()):
                    self.pause_context.add_abort(message)
                    self.recorder.warning(rollout, conditions.ABORTED_REASON, message)

        replicas = defaults.replicas_or_default(rollout.spec.replicas)
        active_rs = rsutil.get_replica_set_by_template_hash(self.all_rss, new_status.blue_green.active_selector)
        if rollout.spec.strategy.blue_green is not None and active_rs is not None and rsutil.is_saturated(rollout, active_rs):
            available = True
        elif rollout.spec.strategy.canary is not None and rsutil.available_count(self.all_rss) >= replicas:
            available = True
        else:
            available = False
        conditions.set_condition(new_status, conditions.new_condition(
            conditions.AVAILABLE,
            conditions.TRUE if available else conditions.FALSE,
            conditions.AVAILABLE_REASON,
            conditions.AVAILABLE_MESSAGE if available else conditions.NOT_AVAILABLE_MESSAGE,
        ))

        failures = self.get_replica_failures()
        if failures:
            conditions.set_condition(new_status, failures[0])
        else:
            conditions.remove_condition(new_status, conditions.REPLICA_FAILURE)

        if conditions.rollout_completed(rollout, new_status):
            conditions.set_condition(new_status, conditions.new_condition(
                conditions.COMPLETED, conditions.TRUE, conditions.COMPLETED_REASON, conditions.COMPLETED_REASON
            ))
        else:
            condition = conditions.new_condition(
                conditions.COMPLETED, conditions.FALSE, conditions.COMPLETED_REASON, conditions.COMPLETED_REASON
            )
            if conditions.set_condition(new_status, condition):
                self.recorder.normal(
                    rollout,
                    conditions.NOT_COMPLETED_REASON,
                    conditions.NOT_COMPLETED_MESSAGE.format(revision + 1, new_status.current_pod_hash),
                )
        return new_status

    def get_replica_failures(self) -> List[RolloutCondition]:
        """ReplicaFailure conditions of the new replica set, or of any replica set when it has none."""
        if self.new_rs is not None and self.new_rs.failure_condition:
            return [replica_set_failure_condition(self.new_rs.failure_condition)]
        return [
            replica_set_failure_condition(rs.failure_condition)
            for rs in self.all_rss
            if rs is not None and rs.failure_condition
        ]

    def persist_rollout_status(self, new_status: RolloutStatus) -> None:
        """
        Fold pause state into `new_status` and patch whatever differs from the persisted status.

        Raises:
            ApiException: When the status patch fails
        """
        previous = self.rollout.status
        self.pause_context.calculate_pause_status(new_status)
        new_status.observed_generation = str(self.rollout.metadata.generation)
        new_status.phase, new_status.message = conditions.calculate_rollout_phase(self.rollout.spec, new_status)

        patch = status_patch(previous, new_status)
        if patch is None:
            self.log.info("No status changes. Skipping patch")
            self.requeue_stuck_rollout(new_status)
            return

        try:
            self.new_rollout = self.client.patch_rollout_status(self.rollout.namespace, self.rollout.name, patch)
        except ApiException as e:
            self.log.warning(f"⚠️ Error updating rollout: {e.reason}")
            raise
        self.send_state_change_events(previous, new_status)
        self.log.info(f"Patched: {json.dumps(patch)}")

    def send_state_change_events(self, previous: RolloutStatus, new_status: RolloutStatus) -> None:
        was_paused = bool(previous.pause_conditions)
        is_paused = bool(new_status.pause_conditions)
        if was_paused == is_paused:
            return
        if is_paused:
            reason = new_status.pause_conditions[0].reason.value
            self.recorder.normal(self.rollout, conditions.PAUSED_REASON, f"{conditions.PAUSED_MESSAGE} ({reason})")
        elif new_status.aborted_at is None:
            # an abort also clears the pause conditions
            self.recorder.normal(self.rollout, conditions.RESUMED_REASON, conditions.RESUMED_MESSAGE)

    def requeue_stuck_rollout(self, new_status: RolloutStatus) -> Optional[float]:
        """
        Requeue a rollout that made no progress for a progress deadline check.

        Returns:
            Seconds until the check, 0 when it is due now, None when no check is needed
        """
        current = conditions.get_condition(self.rollout.status, conditions.PROGRESSING)
        if current is None or current.last_update_time is None:
            return None
        is_paused = bool(self.rollout.status.pause_conditions) or self.rollout.spec.paused
        if (
            conditions.rollout_healthy(self.rollout, new_status)
            or current.reason == conditions.TIMED_OUT_REASON
            or is_paused
            or self.rollout.status.abort
            or is_indefinite_step(self.rollout)
        ):
            return None
        deadline = timeutil.parse_time(current.last_update_time) + timeutil.seconds(
            defaults.progress_deadline_seconds(self.rollout)
        )
        after = (deadline - timeutil.now()).total_seconds()
        if after < 1:
            self.log.info("Queueing up Rollout for a progress check now")
            self.enqueue_after(0)
            return 0
        self.log.info(f"Queueing up rollout for a progress after {int(after)}s")
        self.enqueue_after(after + 1)
        return after

    # -------------------------------------------------------------------------
    # Promotion
    # -------------------------------------------------------------------------
    def reset_rollout_status(self, new_status: RolloutStatus) -> None:
        """Reset per-update status fields as at the start of a new update."""
        self.pause_context.clear_pause_conditions()
        self.pause_context.remove_abort()
        self.set_restarted_at()
        new_status.restarted_at = self.new_status.restarted_at
        new_status.promote_full = False
        new_status.blue_green.pre_promotion_analysis_run_status = None
        new_status.blue_green.post_promotion_analysis_run_status = None
        new_status.blue_green.scale_up_preview_check_point = False
        new_status.canary.current_step_analysis_run_status = None
        new_status.canary.current_background_analysis_run_status = None
        new_status.current_step_index = rsutil.reset_current_step_index(self.rollout)

    def is_rollback_within_window(self) -> bool:
        """True when the new replica set predates stable by fewer than rollbackWindow.revisions."""
        if self.new_rs is None or self.stable_rs is None:
            return False
        window = self.rollout.spec.rollback_window
        new_created = self.new_rs.creation_timestamp
        stable_created = self.stable_rs.creation_timestamp
        if new_created is None or stable_created is None or not new_created < stable_created:
            return False
        if window is None or window.revisions <= 0:
            return False
        size = sum(
            1
            for rs in self.all_rss
            if rs.creation_timestamp is not None and new_created < rs.creation_timestamp < stable_created
        )
        if size < window.revisions:
            self.log.info(f"Rollback within the window: {size} ({window.revisions})")
            return True
        self.log.info(f"Rollback outside the window: {size} ({window.revisions})")
        return False

    def should_full_promote(self, new_status: RolloutStatus) -> str:
        """
        Reason to mark the new replica set stable, or "" while the update is still in progress.

        The order of the checks matters.
        """
        if self.stable_rs is None:
            return "Initial deploy"
        replicas = defaults.replicas_or_default(self.rollout.spec.replicas)
        if self.rollout.spec.strategy.canary is not None:
            if self.pause_context.is_aborted():
                return ""
            if self.new_rs is None or self.new_rs.available_replicas != replicas:
                return ""
            if self.rollout.status.promote_full:
                return "Full promotion requested"
            if self.is_rollback_within_window():
                return "Rollback within window"
            _, index = rsutil.get_current_canary_step(self.rollout)
            step_count = len(self.rollout.spec.strategy.canary.steps)
            if step_count == 0 or (index is not None and index == step_count):
                return f"Completed all {step_count} canary steps"
            return ""

        if self.rollout.spec.strategy.blue_green is not None:
            if new_status.blue_green.active_selector == "":
                return "Initial deploy"
            if new_status.blue_green.active_selector != new_status.current_pod_hash:
                return ""
            if not self.are_targets_verified():
                return ""
            if self.rollout.status.promote_full:
                return "Full promotion requested"
            if self.is_rollback_within_window():
                return "Rollback within window"
            if self.pause_context.is_aborted():
                return ""
            if self.rollout.spec.strategy.blue_green.post_promotion_analysis is not None:
                if rsutil.has_scale_down_deadline(self.new_rs):
                    return f"Rollback to '{self.new_rs.name}' within scaleDownDelay"
                post = self.current_ars.get(defaults.ROLLOUT_TYPE_POST_PROMOTION)
                if post is None or post.phase != AnalysisPhase.SUCCESSFUL:
                    return ""
            return "Completed blue-green update"
        return ""

    def promote_stable(self, new_status: RolloutStatus, reason: str) -> None:
        """Mark the current pod hash stable and clear the per-update state."""
        self.pause_context.clear_pause_conditions()
        self.pause_context.remove_abort()
        new_status.promote_full = False
        new_status.blue_green.scale_up_preview_check_point = False
        if self.rollout.spec.strategy.canary is not None:
            step_count = len(self.rollout.spec.strategy.canary.steps)
            new_status.current_step_index = step_count if step_count > 0 else None
        if new_status.stable_rs != new_status.current_pod_hash:
            new_status.stable_rs = new_status.current_pod_hash
            revision = rsutil.rollout_revision(self.rollout)
            self.recorder.normal(
                self.rollout,
                conditions.COMPLETED_REASON,
                conditions.COMPLETED_MESSAGE.format(revision, new_status.current_pod_hash, reason),
            )
