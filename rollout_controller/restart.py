"""
Pod restarts requested through spec.restartAt.
"""
import logging
from typing import List

from kubernetes.client.rest import ApiException

from rollout_controller import defaults, timeutil
from rollout_controller import replicaset_util as rsutil
from rollout_controller.kube_types import Pod, ReplicaSet

logger = logging.getLogger(__name__)


def is_pod_available(pod: Pod, min_ready_seconds: int) -> bool:
    if not pod.ready or pod.deletion_timestamp is not None:
        return False
    if min_ready_seconds == 0:
        return True
    if pod.ready_since is None:
        return False
    return timeutil.parse_time(pod.ready_since) + timeutil.seconds(min_ready_seconds) <= timeutil.now()


class RestartMixin:
    """Rollout context methods evicting pods older than spec.restartAt."""

    def sorted_by_restart_priority(self) -> List[ReplicaSet]:
        """Stable replica set first, then the new one, then the rest oldest first."""
        stable_name = self.stable_rs.name if self.stable_rs is not None else ""
        new_name = self.new_rs.name if self.new_rs is not None else ""

        def priority(rs: ReplicaSet):
            if rs.name == stable_name:
                return (0, 0.0)
            if rs.name == new_name:
                return (1, 0.0)
            created = rs.creation_timestamp.timestamp() if rs.creation_timestamp else 0.0
            return (2, created)

        return sorted(self.all_rss, key=priority)

    def rollout_pods(self, replica_sets: List[ReplicaSet]) -> List[Pod]:
        selector = self.rollout.spec.selector.match_labels if self.rollout.spec.selector else {}
        pods = self.client.list_pods(self.rollout.namespace, selector)
        order = {rs.uid: i for i, rs in enumerate(replica_sets)}
        owned = [pod for pod in pods if pod.owner_uid in order]
        return sorted(owned, key=lambda pod: order[pod.owner_uid])

    def check_enqueue_for_restart(self) -> None:
        restart_at = self.rollout.spec.restart_at
        now = timeutil.now()
        if restart_at is None or now > timeutil.parse_time(restart_at):
            return
        remaining = (timeutil.parse_time(restart_at) - now).total_seconds()
        if remaining < self.settings.RESYNC_PERIOD_SECS:
            self.log.info(f"Enqueueing Rollout in {remaining} seconds for restart")
            self.enqueue_after(remaining)

    def reconcile_restart(self) -> None:
        """
        Evict pods created before spec.restartAt while availability allows.

        Sets status.restartedAt once every pod is newer than the restart time, otherwise
        re-checks after RESTART_CHECK_INTERVAL_SECS.

        Raises:
            ApiException: For eviction failures other than TooManyRequests
        """
        self.check_enqueue_for_restart()
        if not rsutil.needs_restart(self.rollout):
            return

        replica_sets = self.sorted_by_restart_priority()
        pods = self.rollout_pods(replica_sets)
        total_replicas = rsutil.replica_count(replica_sets)
        replicas = defaults.replicas_or_default(self.rollout.spec.replicas)
        min_ready_seconds = self.rollout.spec.min_ready_seconds
        available = sum(1 for pod in pods if is_pod_available(pod, min_ready_seconds))
        max_unavailable = rsutil.max_unavailable(self.rollout)
        concurrent = max(max_unavailable, 1)
        min_available = max(replicas, total_replicas) - concurrent
        can_restart = available - min_available
        self.log.info(
            f"Reconcile pod restart (replicas:{replicas}, totalReplicas:{total_replicas}, available:{available}, "
            f"maxUnavailable:{max_unavailable}, effectiveMinAvailable:{min_available}, "
            f"concurrentRestart:{concurrent}, canRestart:{can_restart})"
        )

        restart_at = timeutil.parse_time(self.rollout.spec.restart_at)
        needs = 0
        restarted = 0
        for pod in pods:
            created = timeutil.parse_time(pod.creation_timestamp)
            if created is not None and created >= restart_at:
                continue
            needs += 1
            if can_restart <= 0 or pod.deletion_timestamp is not None:
                continue
            self.log.info(
                f"restarting Pod {pod.name} that's older than restartAt Time "
                f"(created {timeutil.format_time(created) if created else 'unknown'})"
            )
            try:
                self.client.evict_pod(pod.namespace, pod.name)
            except ApiException as e:
                if e.status == 429:
                    self.log.warning(f"⚠️ Eviction of Pod {pod.name} refused: {e.reason}")
                    continue
                raise
            can_restart -= 1
            restarted += 1

        remaining = needs - restarted
        if remaining != 0:
            self.log.info(
                f"{needs}/{len(pods)} pods require restart. restarted {restarted}. "
                f"retrying in {self.settings.RESTART_CHECK_INTERVAL_SECS}s"
            )
            self.enqueue_after(self.settings.RESTART_CHECK_INTERVAL_SECS)
        else:
            self.log.info(f"all {len(pods)} pods are current. setting restartedAt")
            self.set_restarted_at()
