"""
Scaling engine.

Applies replica counts to the new, stable and other replica sets of a rollout, manages the
scale down deadline annotation and trims the revision history.
"""
import logging
from typing import Dict, List, Optional, Tuple

from kubernetes.client.rest import ApiException

from rollout_controller import conditions, defaults, timeutil
from rollout_controller import replicaset_util as rsutil
from rollout_controller.analysis import skip_post_promotion_analysis_run
from rollout_controller.errors import RolloutError
from rollout_controller.kube_types import ReplicaSet
from rollout_controller.pause import get_pause_condition
from rollout_controller.rollout_types import AnalysisPhase, PauseReason, Rollout

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Annotation helpers
# -----------------------------------------------------------------------------
def set_new_replica_set_annotations(rollout: Rollout, rs: ReplicaSet, new_revision: str, exists: bool) -> bool:
    """
    Stamp the revision (and, for a new replica set, the desired replica count) on `rs`.

    The revision only ever moves forward.

    Returns:
        True when an annotation changed
    """
    changed = False
    old_revision = rs.annotations.get(defaults.REVISION_ANNOTATION)
    try:
        moves_forward = old_revision is None or int(old_revision) < int(new_revision)
    except ValueError:
        raise RolloutError(f"invalid revision {old_revision!r} on ReplicaSet '{rs.name}'")
    if moves_forward:
        rs.annotations[defaults.REVISION_ANNOTATION] = new_revision
        changed = True
    if not exists and set_replicas_annotations(rs, defaults.replicas_or_default(rollout.spec.replicas)):
        changed = True
    return changed


def replicas_annotations_need_update(rs: ReplicaSet, desired: int) -> bool:
    return rs.annotations.get(defaults.DESIRED_REPLICAS_ANNOTATION) != str(desired)


def set_replicas_annotations(rs: ReplicaSet, desired: int) -> bool:
    if not replicas_annotations_need_update(rs, desired):
        return False
    rs.annotations[defaults.DESIRED_REPLICAS_ANNOTATION] = str(desired)
    return True


def group_by_pod_hash(objects: List) -> Dict[str, List]:
    grouped: Dict[str, List] = {}
    for obj in objects:
        pod_hash = obj.labels.get(defaults.POD_TEMPLATE_HASH_LABEL)
        if pod_hash:
            grouped.setdefault(pod_hash, []).append(obj)
    return grouped


class ReplicaSetMixin:
    """Rollout context methods scaling replica sets."""

    # -------------------------------------------------------------------------
    # Scale down deadlines
    # -------------------------------------------------------------------------
    def remove_scale_down_delay(self, rs: ReplicaSet) -> None:
        if not rsutil.has_scale_down_deadline(rs):
            return
        key = defaults.SCALE_DOWN_DEADLINE_ANNOTATION
        updated = self.client.annotate_replica_set(rs.namespace, rs.name, {key: None})
        self.log.info(f"Removed '{key}' annotation from RS '{rs.name}'")
        self._replace_replica_set(updated)

    def add_scale_down_delay(self, rs: Optional[ReplicaSet], delay_seconds: int) -> None:
        if rs is None:
            return
        if delay_seconds <= 0:
            self.remove_scale_down_delay(rs)
            return
        key = defaults.SCALE_DOWN_DEADLINE_ANNOTATION
        deadline = timeutil.format_time(timeutil.now() + timeutil.seconds(delay_seconds))
        updated = self.client.annotate_replica_set(rs.namespace, rs.name, {key: deadline})
        self.log.info(f"Set '{key}' annotation on '{rs.name}' to {deadline} ({delay_seconds}s)")
        self._replace_replica_set(updated)

    def remove_scale_down_deadlines(self) -> None:
        """Clear the deadline from the new and stable replica sets, which must keep running."""
        to_remove: List[ReplicaSet] = []
        if self.new_rs is not None and not self.should_delay_scale_down_on_abort():
            to_remove.append(self.new_rs)
        if self.stable_rs is not None:
            if not to_remove or self.stable_rs.name != self.new_rs.name:
                to_remove.append(self.stable_rs)
        for rs in to_remove:
            self.remove_scale_down_delay(rs)

    def should_delay_scale_down_on_abort(self) -> bool:
        """
        True when an aborted update keeps its new replica set up for abortScaleDownDelaySeconds.

        Basic canaries never delay; dynamic stable scale only delays when the delay was
        set explicitly.
        """
        if not self.pause_context.is_aborted():
            return False
        if self.stable_rs is None:
            self.log.info("Cannot delay scale down on abort: no stable ReplicaSet")
            return False
        canary = self.rollout.spec.strategy.canary
        if canary is not None and canary.traffic_routing is None:
            return False
        delay, was_set = defaults.abort_scale_down_delay_seconds(self.rollout)
        if delay is None:
            return False
        if canary is not None and canary.dynamic_stable_scale and not was_set:
            return False
        return True

    def scale_down_delay_helper(self, rs: ReplicaSet, annotated: int, rollout_replicas: int) -> Tuple[int, int]:
        """
        Decide how many replicas an old replica set keeps while its scale down delay runs.

        At most scaleDownDelayRevisionLimit replica sets are held up at a time; the rest
        are scaled to zero immediately.

        Args:
            rs: Old replica set being considered, newest first
            annotated: Replica sets already held up by a deadline this pass
            rollout_replicas: Desired replica count of the rollout

        Returns:
            Tuple of (updated annotated count, desired replica count)
        """
        desired = 0
        limit = defaults.scale_down_revision_limit(self.rollout)
        if not rsutil.has_scale_down_deadline(rs):
            delay = defaults.scale_down_delay_seconds(self.rollout)
            if delay > 0 and rs.replicas > 0 and annotated < limit:
                annotated += 1
                desired = rs.replicas
                self.add_scale_down_delay(rs, delay)
                self.enqueue_after(delay)
            return annotated, desired

        annotated += 1
        if annotated > limit:
            self.log.info(f"At ScaleDownDelayRevisionLimit ({limit}) and scaling down the rest")
            return annotated, desired
        try:
            remaining = rsutil.time_remaining_before_scale_down_deadline(rs)
        except ValueError as e:
            self.log.warning(f"⚠️ {e}")
            return annotated, desired
        if remaining is not None:
            self.log.info(f"RS '{rs.name}' has not reached the scaleDownTime")
            if remaining.total_seconds() < self.settings.RESYNC_PERIOD_SECS:
                self.enqueue_after(remaining.total_seconds())
            desired = rollout_replicas
        return annotated, desired

    # -------------------------------------------------------------------------
    # New replica set
    # -------------------------------------------------------------------------
    def reconcile_new_replica_set(self) -> bool:
        """
        Scale the new replica set toward its desired count for this pass.

        Returns:
            True when the replica set was scaled
        """
        if self.new_rs is None:
            return False
        count = rsutil.new_rs_new_replicas(
            self.rollout, self.all_rss, self.new_rs, self.new_status.canary.weights
        )

        if self.should_delay_scale_down_on_abort():
            delay, _ = defaults.abort_scale_down_delay_seconds(self.rollout)
            self.log.info(f"Scale down new rs '{self.new_rs.name}' on abort ({delay}s)")
            deadline = self.new_rs.annotations.get(defaults.SCALE_DOWN_DEADLINE_ANNOTATION)
            if deadline:
                self.log.info(f"New rs '{self.new_rs.name}' has scaledown deadline annotation: {deadline}")
                try:
                    scale_down_at = timeutil.parse_time(deadline)
                except ValueError:
                    self.log.warning(f"⚠️ Unable to read scaleDownAt label on rs '{self.new_rs.name}'")
                    scale_down_at = None
                if scale_down_at is not None:
                    now = timeutil.now()
                    if scale_down_at > now:
                        self.log.info(f"RS '{self.new_rs.name}' has not reached the scaleDownTime")
                        remaining = (scale_down_at - now).total_seconds()
                        if remaining < self.settings.RESYNC_PERIOD_SECS:
                            self.enqueue_after(remaining)
                        return False
                    self.log.info(f"RS '{self.new_rs.name}' has reached the scaleDownTime")
                    count = 0
            elif delay is not None:
                replicas = defaults.replicas_or_default(self.rollout.spec.replicas)
                if self.stable_rs.available_replicas == replicas:
                    self.add_scale_down_delay(self.new_rs, delay)
                else:
                    self.log.info("Waiting for the stable ReplicaSet to be fully available before scaling down")
                return False

        scaled, _ = self.scale_replica_set_and_record_event(self.new_rs, count)
        return scaled

    # -------------------------------------------------------------------------
    # Other replica sets
    # -------------------------------------------------------------------------
    def reconcile_other_replica_sets(self) -> bool:
        """
        Scale down replica sets that are neither new nor stable.

        Returns:
            True when anything was scaled down
        """
        other_rss = rsutil.filter_active(self.other_rss)
        old_pods = rsutil.replica_count(other_rss)
        if old_pods == 0:
            return False
        self.log.info(f"Reconciling {len(other_rss)} old ReplicaSets (total pods: {old_pods})")

        scaled = False
        if self.rollout.spec.strategy.canary is not None:
            scaled = self.scale_down_old_replica_sets_for_canary(other_rss) > 0
        if self.rollout.spec.strategy.blue_green is not None:
            scaled = self.scale_down_old_replica_sets_for_blue_green(other_rss)
        if scaled:
            self.log.info("Scaled down old RSes")
        return scaled

    def cleanup_unhealthy_replicas(self, old_rss: List[ReplicaSet]) -> Tuple[List[ReplicaSet], int]:
        """Scale old replica sets down to their available replicas, oldest first."""
        cleaned: List[ReplicaSet] = []
        total = 0
        for rs in rsutil.sort_by_creation(old_rss):
            if rs.replicas == 0 or rs.available_replicas >= rs.replicas:
                cleaned.append(rs)
                continue
            old = rs.replicas
            _, rs = self.scale_replica_set_and_record_event(rs, rs.available_replicas)
            total += old - rs.replicas
            cleaned.append(rs)
        if total:
            self.log.info(f"Cleaned up unhealthy replicas from old RSes by {total}")
        return cleaned, total

    def scale_down_old_replica_sets_for_canary(self, old_rss: List[ReplicaSet]) -> int:
        """
        Scale down old replica sets of a canary rollout.

        Unhealthy replicas go first. Healthy replicas are then removed newest revision
        first while maxUnavailable allows; a traffic-routed canary keeps them until
        their scale down deadline.

        Returns:
            Number of replicas scaled down
        """
        old_rss, total = self.cleanup_unhealthy_replicas(old_rss)

        replicas = defaults.replicas_or_default(self.rollout.spec.replicas)
        available = rsutil.available_count(self.all_rss)
        min_available = replicas - rsutil.max_unavailable(self.rollout)
        max_scale_down = available - min_available
        if max_scale_down <= 0:
            return total
        self.log.info(
            f"Found {available} available pods, scaling down old RSes "
            f"(minAvailable: {min_available}, maxScaleDown: {max_scale_down})"
        )

        traffic_routed = self.rollout.spec.strategy.canary.traffic_routing is not None
        annotated = 0
        for rs in rsutil.sort_by_revision(old_rss, reverse=True):
            if max_scale_down <= 0:
                break
            if rs.replicas == 0:
                continue
            if self.is_replica_set_referenced(rs):
                self.log.info(f"Skip scale down of older RS '{rs.name}': still referenced")
                continue
            if traffic_routed:
                annotated, desired = self.scale_down_delay_helper(rs, annotated, replicas)
            else:
                desired = max(rs.replicas - max_scale_down, 0)
            if desired >= rs.replicas:
                continue
            old = rs.replicas
            self.scale_replica_set_and_record_event(rs, desired)
            max_scale_down -= old - desired
            total += old - desired
        return total

    def scale_down_old_replica_sets_for_blue_green(self, old_rss: List[ReplicaSet]) -> bool:
        """
        Scale down old replica sets of a blue-green rollout, newest revision first.

        Returns:
            True when anything was scaled
        """
        if get_pause_condition(self.rollout, PauseReason.INCONCLUSIVE_ANALYSIS) is not None:
            self.log.info("Cannot scale down old ReplicaSets while paused with inconclusive Analysis")
            return False
        blue_green = self.rollout.spec.strategy.blue_green
        if (
            blue_green.post_promotion_analysis is not None
            and blue_green.scale_down_delay_seconds is None
            and not skip_post_promotion_analysis_run(self.rollout, self.new_rs)
        ):
            post = self.current_ars.get(defaults.ROLLOUT_TYPE_POST_PROMOTION)
            if post is None or post.phase != AnalysisPhase.SUCCESSFUL:
                self.log.info("Cannot scale down old ReplicaSets while Analysis is running and no ScaleDownDelaySeconds")
                return False

        scaled = False
        annotated = 0
        replicas = defaults.replicas_or_default(self.rollout.spec.replicas)
        for rs in rsutil.sort_by_revision(old_rss, reverse=True):
            if self.is_replica_set_referenced(rs):
                self.log.info(f"Skip scale down of older RS '{rs.name}': still referenced")
                continue
            if rs.replicas == 0:
                continue
            annotated, desired = self.scale_down_delay_helper(rs, annotated, replicas)
            if desired >= rs.replicas:
                continue
            self.scale_replica_set_and_record_event(rs, desired)
            scaled = True
        return scaled

    def is_replica_set_referenced(self, rs: ReplicaSet) -> bool:
        """
        True while a status field, traffic weight or service selector still points at `rs`.

        A service that cannot be read (other than NotFound) counts as a reference so nothing
        is scaled down on partial information.
        """
        pod_hash = rs.pod_template_hash
        if not pod_hash:
            return False
        status = self.rollout.status
        references = [
            status.stable_rs,
            status.current_pod_hash,
            status.blue_green.active_selector,
            status.blue_green.preview_selector,
        ]
        if status.canary.weights is not None:
            references.append(status.canary.weights.canary.pod_template_hash)
            references.append(status.canary.weights.stable.pod_template_hash)
        if pod_hash in references:
            return True

        strategy = self.rollout.spec.strategy
        if strategy.canary is not None:
            services = [strategy.canary.canary_service, strategy.canary.stable_service]
        else:
            services = [strategy.blue_green.active_service, strategy.blue_green.preview_service]
        for name in services:
            if not name:
                continue
            try:
                service = self.client.get_service(self.rollout.namespace, name)
            except ApiException as e:
                if e.status == 404:
                    continue
                self.log.warning(f"⚠️ Unable to read service '{name}', assuming RS '{rs.name}' is referenced: {e.reason}")
                return True
            if service.rollout_selector == pod_hash:
                return True
        return False

    # -------------------------------------------------------------------------
    # Scaling
    # -------------------------------------------------------------------------
    def scale_replica_set_and_record_event(self, rs: ReplicaSet, new_scale: int) -> Tuple[bool, ReplicaSet]:
        replicas = defaults.replicas_or_default(self.rollout.spec.replicas)
        if rs.replicas == new_scale and not replicas_annotations_need_update(rs, replicas):
            return False, rs
        operation = "up" if rs.replicas < new_scale else "down"
        return self.scale_replica_set(rs, new_scale, operation)

    def scale_replica_set(self, rs: ReplicaSet, new_scale: int, operation: str) -> Tuple[bool, ReplicaSet]:
        """
        Write a replica count and the desired-replicas annotation to a replica set.

        A full scale down also drops the scale down deadline, unless the deadline is the
        abort delay still being honoured.

        Returns:
            Tuple of (whether the replica count changed, updated replica set)
        """
        replicas = defaults.replicas_or_default(self.rollout.spec.replicas)
        size_changed = rs.replicas != new_scale
        if not size_changed and not replicas_annotations_need_update(rs, replicas):
            return False, rs

        updated = rs.copy()
        old_scale = rs.replicas
        updated.replicas = new_scale
        set_replicas_annotations(updated, replicas)
        if new_scale == 0 and not self.should_delay_scale_down_on_abort():
            updated.annotations.pop(defaults.SCALE_DOWN_DEADLINE_ANNOTATION, None)

        updated = self.client.update_replica_set(updated)
        self._replace_replica_set(updated)
        if size_changed:
            revision = rsutil.revision(updated)
            message = conditions.SCALING_RS_MESSAGE.format(operation, updated.name, revision, old_scale, new_scale)
            self.recorder.normal(self.rollout, conditions.SCALING_RS_REASON, message)
        return size_changed, updated

    # -------------------------------------------------------------------------
    # Revision history
    # -------------------------------------------------------------------------
    def reconcile_revision_history_limit(self, old_rss: List[ReplicaSet]) -> None:
        """
        Delete the oldest scaled-down replica sets beyond revisionHistoryLimit.

        Analysis runs and experiments created for a deleted replica set go with it.
        """
        limit = defaults.revision_history_limit(self.rollout)
        cleanable = [rs for rs in old_rss if rs is not None and rs.deletion_timestamp is None]
        diff = len(cleanable) - limit
        if diff <= 0:
            return
        self.log.info(f"Cleaning up {len(cleanable)} old replicasets from revision history limit {limit}")

        ars_by_hash = group_by_pod_hash(self.other_ars)
        exs_by_hash = group_by_pod_hash(self.other_exs)
        for rs in rsutil.sort_by_creation(cleanable)[:diff]:
            if rs.status_replicas != 0 or rs.replicas != 0:
                continue
            if self.is_replica_set_referenced(rs):
                continue
            self.log.info(f"Trying to cleanup replica set '{rs.name}'")
            try:
                self.client.delete_replica_set(rs.namespace, rs.name)
            except ApiException as e:
                if e.status != 404:
                    raise
            pod_hash = rs.pod_template_hash
            if pod_hash in ars_by_hash:
                self.log.info(f"Cleaning up associated analysis runs with ReplicaSet '{rs.name}'")
                self.delete_analysis_runs(ars_by_hash[pod_hash])
            if pod_hash in exs_by_hash:
                self.log.info(f"Cleaning up associated experiments with ReplicaSet '{rs.name}'")
                self.delete_experiments(exs_by_hash[pod_hash])
