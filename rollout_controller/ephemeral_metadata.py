"""
Ephemeral pod metadata.

Role specific labels and annotations (canary/stable, preview/active) are injected into the
pod template of the matching replica set and into its running pods. What was injected is
remembered in an annotation so keys can be removed again when the role changes.
"""
import copy
import json
import logging
from typing import Dict, Any, Optional, Tuple

from rollout_controller.defaults import EPHEMERAL_METADATA_ANNOTATION
from rollout_controller.kube_types import ReplicaSet
from rollout_controller.rollout_types import PodTemplateMetadata

logger = logging.getLogger(__name__)


def parse_existing_pod_metadata(rs: ReplicaSet) -> Optional[PodTemplateMetadata]:
    raw = rs.annotations.get(EPHEMERAL_METADATA_ANNOTATION)
    if raw is None:
        return None
    try:
        return PodTemplateMetadata.model_validate(json.loads(raw))
    except ValueError:
        logger.warning(f"⚠️ Failed to determine existing ephemeral metadata from annotation: {raw}")
        return None


def sync_ephemeral_pod_metadata(
    labels: Dict[str, str],
    annotations: Dict[str, str],
    existing: Optional[PodTemplateMetadata],
    desired: Optional[PodTemplateMetadata],
) -> Tuple[Dict[str, str], Dict[str, str], bool]:
    """
    Inject desired metadata and drop previously injected keys that are no longer desired.

    Only keys this controller injected are ever removed, so metadata owned by other
    controllers (sidecar injectors and the like) is left alone.

    Args:
        labels: Current labels
        annotations: Current annotations
        existing: Metadata injected on a previous pass
        desired: Metadata that should be present now, None to remove everything injected

    Returns:
        Tuple of (labels, annotations, modified)
    """
    labels = dict(labels or {})
    annotations = dict(annotations or {})
    modified = False

    if desired is not None:
        for key, value in desired.annotations.items():
            if annotations.get(key) != value:
                annotations[key] = value
                modified = True
        for key, value in desired.labels.items():
            if labels.get(key) != value:
                labels[key] = value
                modified = True

    if existing is not None:
        for key in existing.annotations:
            if (desired is None or key not in desired.annotations) and key in annotations:
                del annotations[key]
                modified = True
        for key in existing.labels:
            if (desired is None or key not in desired.labels) and key in labels:
                del labels[key]
                modified = True

    return labels, annotations, modified


def sync_replica_set_ephemeral_metadata(
    rs: ReplicaSet, desired: Optional[PodTemplateMetadata]
) -> Tuple[ReplicaSet, bool]:
    """Return a copy of the replica set with its pod template carrying `desired` metadata."""
    existing = parse_existing_pod_metadata(rs)
    metadata = rs.template.get("metadata", {})
    labels, annotations, modified = sync_ephemeral_pod_metadata(
        metadata.get("labels", {}), metadata.get("annotations", {}), existing, desired
    )
    rs = rs.copy()
    if not modified:
        return rs, False
    template_meta = rs.template.setdefault("metadata", {})
    template_meta["labels"] = labels
    template_meta["annotations"] = annotations
    if desired is not None:
        rs.annotations[EPHEMERAL_METADATA_ANNOTATION] = json.dumps(desired.to_api(), sort_keys=True)
    else:
        rs.annotations.pop(EPHEMERAL_METADATA_ANNOTATION, None)
    return rs, True


def strip_ephemeral_metadata(rs: ReplicaSet) -> Dict[str, Any]:
    """Pod template of a replica set with every injected ephemeral key removed."""
    stripped, _ = sync_replica_set_ephemeral_metadata(rs, None)
    template = copy.deepcopy(stripped.template)
    metadata = template.get("metadata")
    if metadata is not None:
        for key in ("labels", "annotations"):
            if key in metadata and not metadata[key]:
                del metadata[key]
    return template


class EphemeralMetadataMixin:
    """Rollout context methods keeping role metadata on replica sets and pods current."""

    def reconcile_ephemeral_metadata(self) -> None:
        strategy = self.rollout.spec.strategy
        if strategy.canary is not None:
            new_metadata = strategy.canary.canary_metadata
            stable_metadata = strategy.canary.stable_metadata
        elif strategy.blue_green is not None:
            new_metadata = strategy.blue_green.preview_metadata
            stable_metadata = strategy.blue_green.active_metadata
        else:
            return

        new_hash = self.new_rs.pod_template_hash if self.new_rs is not None else ""
        fully_rolled_out = self.rollout.status.stable_rs in ("", new_hash)
        if fully_rolled_out:
            self.sync_ephemeral_metadata(self.new_rs, stable_metadata)
        else:
            self.sync_ephemeral_metadata(self.new_rs, new_metadata)
            self.sync_ephemeral_metadata(self.stable_rs, stable_metadata)

        for rs in self.other_rss:
            self.sync_ephemeral_metadata(rs, None)

    def sync_ephemeral_metadata(self, rs: Optional[ReplicaSet], desired: Optional[PodTemplateMetadata]) -> None:
        if rs is None:
            return
        modified_rs, modified = sync_replica_set_ephemeral_metadata(rs, desired)
        if not modified:
            return

        existing = parse_existing_pod_metadata(rs)
        for pod in self.client.list_pods(rs.namespace, rs.selector):
            if pod.owner_uid != rs.uid:
                continue
            labels, annotations, pod_modified = sync_ephemeral_pod_metadata(
                pod.labels, pod.annotations, existing, desired
            )
            if pod_modified:
                self.client.update_pod_metadata(pod.namespace, pod.name, labels, annotations)
                self.log.info(f"synced ephemeral metadata to Pod {pod.name}")

        updated = self.client.update_replica_set(modified_rs)
        self._replace_replica_set(updated)
        self.log.info(f"synced ephemeral metadata to ReplicaSet {rs.name}")
