"""
Service selector synchronisation.

Services are pointed at a replica set by setting the pod template hash label in their
selector. The first switch also marks the service as managed by the rollout.
"""
import logging
from typing import Optional, Tuple

from rollout_controller import defaults
from rollout_controller import replicaset_util as rsutil
from rollout_controller.kube_types import ReplicaSet, Service

logger = logging.getLogger(__name__)

SWITCH_SERVICE_REASON = "SwitchService"
SWITCH_SERVICE_MESSAGE = "Switched selector for service '{}' from '{}' to '{}'"


def generate_selector_patch(service: Service, pod_hash: str, rollout_name: str) -> dict:
    patch = {"spec": {"selector": {defaults.POD_TEMPLATE_HASH_LABEL: pod_hash}}}
    if defaults.MANAGED_BY_ANNOTATION not in service.annotations:
        patch["metadata"] = {"annotations": {defaults.MANAGED_BY_ANNOTATION: rollout_name}}
    return patch


def rollout_selector(service: Optional[Service]) -> str:
    if service is None:
        return ""
    return service.rollout_selector


class ServiceMixin:
    """Rollout context methods pointing services at replica sets."""

    def switch_service_selector(self, service: Service, pod_hash: str) -> None:
        """
        Point a service at the pods of one replica set.

        No-op when the selector already matches and the service is already marked as managed.
        """
        old_hash = service.selector.get(defaults.POD_TEMPLATE_HASH_LABEL)
        managed = defaults.MANAGED_BY_ANNOTATION in service.annotations
        if old_hash == pod_hash and managed:
            return

        patch = generate_selector_patch(service, pod_hash, self.rollout.name)
        self.client.patch_service(service.namespace, service.name, patch)
        message = SWITCH_SERVICE_MESSAGE.format(service.name, old_hash or "", pod_hash)
        self.recorder.normal(self.rollout, SWITCH_SERVICE_REASON, message)
        self.log.info(f"✅ {message}")
        service.selector[defaults.POD_TEMPLATE_HASH_LABEL] = pod_hash
        if not managed:
            service.annotations[defaults.MANAGED_BY_ANNOTATION] = self.rollout.name

    def get_preview_and_active_services(self) -> Tuple[Optional[Service], Service]:
        blue_green = self.rollout.spec.strategy.blue_green
        preview = None
        if blue_green.preview_service:
            preview = self.client.get_service(self.rollout.namespace, blue_green.preview_service)
        active = self.client.get_service(self.rollout.namespace, blue_green.active_service)
        return preview, active

    def reconcile_preview_service(self, preview: Optional[Service]) -> None:
        if preview is None:
            return
        self.switch_service_selector(preview, self.new_rs.pod_template_hash)

    def reconcile_active_service(self, active: Service) -> None:
        if not self.ready_for_pause() or not rsutil.is_saturated(self.rollout, self.new_rs):
            self.log.info(f"skipping active service switch: New RS '{self.new_rs.name}' is not fully saturated")
            return

        pod_hash = active.selector.get(defaults.POD_TEMPLATE_HASH_LABEL, "")
        if self.is_blue_green_fast_tracked(active):
            pod_hash = self.new_rs.pod_template_hash
        if self.pause_context.completed_blue_green_pause() and self.completed_pre_promotion_analysis():
            pod_hash = self.new_rs.pod_template_hash
        if self.rollout.status.abort:
            pod_hash = self.rollout.status.stable_rs

        self.switch_service_selector(active, pod_hash)

    def are_targets_verified(self) -> bool:
        return self.target_verified is None or self.target_verified

    def reconcile_stable_and_canary_service(self) -> None:
        canary = self.rollout.spec.strategy.canary
        if canary is None:
            return
        self.ensure_service_targets(canary.stable_service, self.stable_rs)
        if canary.traffic_routing is not None and self.pause_context.is_aborted():
            # the traffic router owns the canary service while aborted
            return
        if rsutil.is_replica_set_ready(self.new_rs):
            self.ensure_service_targets(canary.canary_service, self.new_rs)

    def ensure_service_targets(self, service_name: str, rs: Optional[ReplicaSet]) -> None:
        """Point a service at a replica set if it targets something else."""
        if rs is None or not service_name:
            return
        service = self.client.get_service(self.rollout.namespace, service_name)
        if service.selector.get(defaults.POD_TEMPLATE_HASH_LABEL) == rs.pod_template_hash:
            return
        self.switch_service_selector(service, rs.pod_template_hash)
