"""
Kubernetes client for rollout reconciliation.

Wraps the CoreV1, AppsV1 and CustomObjects APIs and converts raw objects into the
project's own types at this boundary.
"""
import logging
from typing import Dict, Any, Iterator, List, Optional

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException

from rollout_controller import defaults, timeutil
from rollout_controller.kube_types import (
    AnalysisRun,
    Experiment,
    OwnerReference,
    Pod,
    ReplicaSet,
    Service,
)
from rollout_controller.rollout_types import AnalysisPhase, Rollout

logger = logging.getLogger(__name__)

MERGE_PATCH = "application/merge-patch+json"


def label_selector(labels: Dict[str, str]) -> Optional[str]:
    if not labels:
        return None
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def _controller_uid(owner_references) -> Optional[str]:
    for ref in owner_references or []:
        if isinstance(ref, dict):
            if ref.get("controller"):
                return ref.get("uid")
        elif ref.controller:
            return ref.uid
    return None


def _phase(value: Optional[str]) -> AnalysisPhase:
    try:
        return AnalysisPhase(value) if value else AnalysisPhase.PENDING
    except ValueError:
        return AnalysisPhase.PENDING


def analysis_run_from_api(obj: Dict[str, Any]) -> AnalysisRun:
    metadata = obj.get("metadata", {})
    status = obj.get("status") or {}
    spec = obj.get("spec") or {}
    return AnalysisRun(
        name=metadata.get("name", ""),
        namespace=metadata.get("namespace", ""),
        phase=_phase(status.get("phase")),
        message=status.get("message", ""),
        labels=metadata.get("labels") or {},
        annotations=metadata.get("annotations") or {},
        terminate=bool(spec.get("terminate", False)),
        owner_uid=_controller_uid(metadata.get("ownerReferences")),
        creation_timestamp=timeutil.parse_time(metadata.get("creationTimestamp")),
        deletion_timestamp=timeutil.parse_time(metadata.get("deletionTimestamp")),
        spec=spec,
    )


def experiment_from_api(obj: Dict[str, Any]) -> Experiment:
    metadata = obj.get("metadata", {})
    status = obj.get("status") or {}
    spec = obj.get("spec") or {}
    return Experiment(
        name=metadata.get("name", ""),
        namespace=metadata.get("namespace", ""),
        phase=_phase(status.get("phase")),
        message=status.get("message", ""),
        labels=metadata.get("labels") or {},
        annotations=metadata.get("annotations") or {},
        terminate=bool(spec.get("terminate", False)),
        owner_uid=_controller_uid(metadata.get("ownerReferences")),
        creation_timestamp=timeutil.parse_time(metadata.get("creationTimestamp")),
        deletion_timestamp=timeutil.parse_time(metadata.get("deletionTimestamp")),
        spec=spec,
        templates=spec.get("templates") or [],
        template_statuses=status.get("templateStatuses") or [],
    )


class KubeClient:
    """Kubernetes client for rollout controller operations."""

    def __init__(self, in_cluster: bool = True, context: str | None = None):
        """
        Initialize Kubernetes client.

        Args:
            in_cluster: Whether running inside cluster (default: True)
            context: Kubernetes context name (optional)
        """
        try:
            if in_cluster:
                config.load_incluster_config()
            else:
                if context:
                    config.load_kube_config(context=context)
                else:
                    config.load_kube_config()

            self.api_client = client.ApiClient()
            self.v1 = client.CoreV1Api(self.api_client)
            self.apps_v1 = client.AppsV1Api(self.api_client)
            self.custom = client.CustomObjectsApi(self.api_client)
            logger.info("✅ Kubernetes client initialized")

        except Exception as e:
            logger.error(f"❌ Failed to initialize Kubernetes client: {e}")
            raise

    # -------------------------------------------------------------------------
    # Conversion
    # -------------------------------------------------------------------------
    def _serialize(self, obj) -> Dict[str, Any]:
        return self.api_client.sanitize_for_serialization(obj)

    def _to_replica_set(self, rs) -> ReplicaSet:
        failure = None
        for cond in rs.status.conditions or []:
            if cond.type == "ReplicaFailure" and cond.status == "True":
                failure = {"reason": cond.reason or "", "message": cond.message or ""}
        selector = rs.spec.selector.match_labels if rs.spec.selector else None
        return ReplicaSet(
            name=rs.metadata.name,
            namespace=rs.metadata.namespace,
            replicas=rs.spec.replicas if rs.spec.replicas is not None else 1,
            labels=rs.metadata.labels or {},
            annotations=rs.metadata.annotations or {},
            selector=selector or {},
            template=self._serialize(rs.spec.template) or {},
            min_ready_seconds=rs.spec.min_ready_seconds or 0,
            status_replicas=rs.status.replicas or 0,
            ready_replicas=rs.status.ready_replicas or 0,
            available_replicas=rs.status.available_replicas or 0,
            uid=rs.metadata.uid or "",
            owner_uid=_controller_uid(rs.metadata.owner_references),
            creation_timestamp=rs.metadata.creation_timestamp,
            deletion_timestamp=rs.metadata.deletion_timestamp,
            failure_condition=failure,
            resource_version=rs.metadata.resource_version or "",
        )

    @staticmethod
    def _to_service(svc) -> Service:
        return Service(
            name=svc.metadata.name,
            namespace=svc.metadata.namespace,
            selector=svc.spec.selector or {},
            annotations=svc.metadata.annotations or {},
        )

    @staticmethod
    def _to_pod(pod) -> Pod:
        ready = False
        ready_since = None
        for cond in (pod.status.conditions or []) if pod.status else []:
            if cond.type == "Ready" and cond.status == "True":
                ready = True
                ready_since = cond.last_transition_time
        return Pod(
            name=pod.metadata.name,
            namespace=pod.metadata.namespace,
            status=pod.status.phase if pod.status else "",
            labels=pod.metadata.labels or {},
            annotations=pod.metadata.annotations or {},
            creation_timestamp=pod.metadata.creation_timestamp,
            deletion_timestamp=pod.metadata.deletion_timestamp,
            owner_uid=_controller_uid(pod.metadata.owner_references),
            ready=ready,
            ready_since=ready_since,
        )

    # -------------------------------------------------------------------------
    # Rollouts
    # -------------------------------------------------------------------------
    def list_rollouts(self, namespace: str = "") -> List[Rollout]:
        try:
            if namespace:
                result = self.custom.list_namespaced_custom_object(
                    defaults.API_GROUP, defaults.API_VERSION, namespace, defaults.ROLLOUT_PLURAL
                )
            else:
                result = self.custom.list_cluster_custom_object(
                    defaults.API_GROUP, defaults.API_VERSION, defaults.ROLLOUT_PLURAL
                )
            return [Rollout.from_api(item) for item in result.get("items", [])]
        except ApiException as e:
            logger.error(f"Failed to list rollouts: {e}")
            raise

    def get_rollout(self, namespace: str, name: str) -> Rollout:
        try:
            obj = self.custom.get_namespaced_custom_object(
                defaults.API_GROUP, defaults.API_VERSION, namespace, defaults.ROLLOUT_PLURAL, name
            )
            return Rollout.from_api(obj)
        except ApiException as e:
            if e.status != 404:
                logger.error(f"Failed to get rollout {namespace}/{name}: {e}")
            raise

    def patch_rollout(self, namespace: str, name: str, patch: Dict[str, Any]) -> Rollout:
        """
        Merge-patch the rollout resource (metadata and spec).

        Args:
            namespace: Rollout namespace
            name: Rollout name
            patch: JSON merge patch

        Returns:
            Updated rollout
        """
        try:
            obj = self.custom.patch_namespaced_custom_object(
                defaults.API_GROUP, defaults.API_VERSION, namespace, defaults.ROLLOUT_PLURAL, name,
                patch, _content_type=MERGE_PATCH,
            )
            return Rollout.from_api(obj)
        except ApiException as e:
            logger.error(f"Failed to patch rollout {namespace}/{name}: {e}")
            raise

    def patch_rollout_status(self, namespace: str, name: str, patch: Dict[str, Any]) -> Rollout:
        try:
            obj = self.custom.patch_namespaced_custom_object_status(
                defaults.API_GROUP, defaults.API_VERSION, namespace, defaults.ROLLOUT_PLURAL, name,
                patch, _content_type=MERGE_PATCH,
            )
            return Rollout.from_api(obj)
        except ApiException as e:
            logger.error(f"Failed to patch status of rollout {namespace}/{name}: {e}")
            raise

    def watch_rollouts(self, namespace: str = "", timeout_seconds: int = 300) -> Iterator[Dict[str, Any]]:
        w = watch.Watch()
        if namespace:
            return w.stream(
                self.custom.list_namespaced_custom_object,
                defaults.API_GROUP, defaults.API_VERSION, namespace, defaults.ROLLOUT_PLURAL,
                timeout_seconds=timeout_seconds,
            )
        return w.stream(
            self.custom.list_cluster_custom_object,
            defaults.API_GROUP, defaults.API_VERSION, defaults.ROLLOUT_PLURAL,
            timeout_seconds=timeout_seconds,
        )

    # -------------------------------------------------------------------------
    # Replica sets
    # -------------------------------------------------------------------------
    def list_replica_sets(self, namespace: str, selector: Optional[Dict[str, str]] = None) -> List[ReplicaSet]:
        try:
            result = self.apps_v1.list_namespaced_replica_set(
                namespace=namespace,
                label_selector=label_selector(selector or {}),
            )
            return [self._to_replica_set(rs) for rs in result.items]
        except ApiException as e:
            logger.error(f"Failed to list replica sets in {namespace}: {e}")
            raise

    def get_replica_set(self, namespace: str, name: str) -> ReplicaSet:
        try:
            return self._to_replica_set(self.apps_v1.read_namespaced_replica_set(name=name, namespace=namespace))
        except ApiException as e:
            if e.status != 404:
                logger.error(f"Failed to get replica set {namespace}/{name}: {e}")
            raise

    def create_replica_set(self, rs: ReplicaSet, owner: OwnerReference) -> ReplicaSet:
        body = {
            "apiVersion": "apps/v1",
            "kind": "ReplicaSet",
            "metadata": {
                "name": rs.name,
                "namespace": rs.namespace,
                "labels": rs.labels,
                "annotations": rs.annotations,
                "ownerReferences": [owner.to_api()],
            },
            "spec": {
                "replicas": rs.replicas,
                "minReadySeconds": rs.min_ready_seconds,
                "selector": {"matchLabels": rs.selector},
                "template": rs.template,
            },
        }
        try:
            created = self.apps_v1.create_namespaced_replica_set(namespace=rs.namespace, body=body)
            logger.info(f"✅ Created ReplicaSet {rs.namespace}/{rs.name}")
            return self._to_replica_set(created)
        except ApiException as e:
            if e.status != 409:
                logger.error(f"Failed to create replica set {rs.namespace}/{rs.name}: {e}")
            raise

    def update_replica_set(self, rs: ReplicaSet) -> ReplicaSet:
        """
        Write replicas, labels, annotations and pod template of a replica set.

        The write carries the resource version the replica set was read at, so a
        concurrent modification fails with a conflict instead of being overwritten.
        """
        try:
            live = self.apps_v1.read_namespaced_replica_set(name=rs.name, namespace=rs.namespace)
            body = self._serialize(live)
            body["metadata"]["labels"] = rs.labels
            body["metadata"]["annotations"] = rs.annotations
            if rs.resource_version:
                body["metadata"]["resourceVersion"] = rs.resource_version
            body["spec"]["replicas"] = rs.replicas
            body["spec"]["minReadySeconds"] = rs.min_ready_seconds
            body["spec"]["template"] = rs.template
            updated = self.apps_v1.replace_namespaced_replica_set(name=rs.name, namespace=rs.namespace, body=body)
            return self._to_replica_set(updated)
        except ApiException as e:
            logger.error(f"Failed to update replica set {rs.namespace}/{rs.name}: {e}")
            raise

    def annotate_replica_set(self, namespace: str, name: str, annotations: Dict[str, Optional[str]]) -> ReplicaSet:
        """Set annotations on a replica set; a None value removes the key."""
        try:
            updated = self.apps_v1.patch_namespaced_replica_set(
                name=name, namespace=namespace, body={"metadata": {"annotations": annotations}}
            )
            return self._to_replica_set(updated)
        except ApiException as e:
            logger.error(f"Failed to annotate replica set {namespace}/{name}: {e}")
            raise

    def delete_replica_set(self, namespace: str, name: str) -> None:
        try:
            self.apps_v1.delete_namespaced_replica_set(
                name=name, namespace=namespace, body=client.V1DeleteOptions(propagation_policy="Background")
            )
            logger.info(f"Deleted ReplicaSet {namespace}/{name}")
        except ApiException as e:
            if e.status != 404:
                logger.error(f"Failed to delete replica set {namespace}/{name}: {e}")
            raise

    def watch_replica_sets(self, namespace: str = "", timeout_seconds: int = 300) -> Iterator[Dict[str, Any]]:
        w = watch.Watch()
        if namespace:
            return w.stream(self.apps_v1.list_namespaced_replica_set, namespace, timeout_seconds=timeout_seconds)
        return w.stream(self.apps_v1.list_replica_set_for_all_namespaces, timeout_seconds=timeout_seconds)

    def get_deployment_template(self, namespace: str, name: str) -> Dict[str, Any]:
        try:
            deployment = self.apps_v1.read_namespaced_deployment(name=name, namespace=namespace)
            return self._serialize(deployment.spec.template)
        except ApiException as e:
            logger.error(f"Failed to get deployment {namespace}/{name}: {e}")
            raise

    # -------------------------------------------------------------------------
    # Services and pods
    # -------------------------------------------------------------------------
    def get_service(self, namespace: str, name: str) -> Service:
        try:
            return self._to_service(self.v1.read_namespaced_service(name=name, namespace=namespace))
        except ApiException as e:
            if e.status != 404:
                logger.error(f"Failed to get service {namespace}/{name}: {e}")
            raise

    def patch_service(self, namespace: str, name: str, patch: Dict[str, Any]) -> Service:
        try:
            return self._to_service(self.v1.patch_namespaced_service(name=name, namespace=namespace, body=patch))
        except ApiException as e:
            logger.error(f"Failed to patch service {namespace}/{name}: {e}")
            raise

    def list_pods(self, namespace: str, selector: Optional[Dict[str, str]] = None) -> List[Pod]:
        """
        Get pods in a namespace.

        Args:
            namespace: Namespace to list
            selector: Optional labels the pods must carry

        Returns:
            List of Pod objects
        """
        try:
            pods = self.v1.list_namespaced_pod(namespace=namespace, label_selector=label_selector(selector or {}))
            return [self._to_pod(pod) for pod in pods.items]
        except ApiException as e:
            logger.error(f"Failed to get pods: {e}")
            raise

    def evict_pod(self, namespace: str, name: str) -> None:
        body = client.V1Eviction(metadata=client.V1ObjectMeta(name=name, namespace=namespace))
        try:
            self.v1.create_namespaced_pod_eviction(name=name, namespace=namespace, body=body)
        except ApiException as e:
            if e.status != 429:
                logger.error(f"Failed to evict pod {namespace}/{name}: {e}")
            raise

    def update_pod_metadata(self, namespace: str, name: str, labels: Dict[str, str], annotations: Dict[str, str]) -> None:
        try:
            live = self.v1.read_namespaced_pod(name=name, namespace=namespace)
            patch_labels: Dict[str, Optional[str]] = {k: None for k in (live.metadata.labels or {}) if k not in labels}
            patch_labels.update(labels)
            patch_annotations: Dict[str, Optional[str]] = {
                k: None for k in (live.metadata.annotations or {}) if k not in annotations
            }
            patch_annotations.update(annotations)
            self.v1.patch_namespaced_pod(
                name=name,
                namespace=namespace,
                body={"metadata": {"labels": patch_labels, "annotations": patch_annotations}},
            )
        except ApiException as e:
            logger.error(f"Failed to update metadata of pod {namespace}/{name}: {e}")
            raise

    def create_event(self, namespace: str, body: Dict[str, Any]) -> None:
        try:
            self.v1.create_namespaced_event(namespace=namespace, body=body)
        except ApiException as e:
            logger.error(f"Failed to create event in {namespace}: {e}")
            raise

    # -------------------------------------------------------------------------
    # Analysis runs, templates and experiments
    # -------------------------------------------------------------------------
    def list_analysis_runs(self, namespace: str) -> List[AnalysisRun]:
        try:
            result = self.custom.list_namespaced_custom_object(
                defaults.API_GROUP, defaults.API_VERSION, namespace, defaults.ANALYSIS_RUN_PLURAL
            )
            return [analysis_run_from_api(item) for item in result.get("items", [])]
        except ApiException as e:
            logger.error(f"Failed to list analysis runs in {namespace}: {e}")
            raise

    def create_analysis_run(self, namespace: str, body: Dict[str, Any]) -> AnalysisRun:
        try:
            obj = self.custom.create_namespaced_custom_object(
                defaults.API_GROUP, defaults.API_VERSION, namespace, defaults.ANALYSIS_RUN_PLURAL, body
            )
            return analysis_run_from_api(obj)
        except ApiException as e:
            if e.status != 409:
                logger.error(f"Failed to create analysis run in {namespace}: {e}")
            raise

    def get_analysis_run(self, namespace: str, name: str) -> AnalysisRun:
        try:
            obj = self.custom.get_namespaced_custom_object(
                defaults.API_GROUP, defaults.API_VERSION, namespace, defaults.ANALYSIS_RUN_PLURAL, name
            )
            return analysis_run_from_api(obj)
        except ApiException as e:
            if e.status != 404:
                logger.error(f"Failed to get analysis run {namespace}/{name}: {e}")
            raise

    def patch_analysis_run(self, namespace: str, name: str, patch: Dict[str, Any]) -> AnalysisRun:
        try:
            obj = self.custom.patch_namespaced_custom_object(
                defaults.API_GROUP, defaults.API_VERSION, namespace, defaults.ANALYSIS_RUN_PLURAL, name,
                patch, _content_type=MERGE_PATCH,
            )
            return analysis_run_from_api(obj)
        except ApiException as e:
            if e.status != 404:
                logger.error(f"Failed to patch analysis run {namespace}/{name}: {e}")
            raise

    def delete_analysis_run(self, namespace: str, name: str) -> None:
        try:
            self.custom.delete_namespaced_custom_object(
                defaults.API_GROUP, defaults.API_VERSION, namespace, defaults.ANALYSIS_RUN_PLURAL, name
            )
        except ApiException as e:
            if e.status != 404:
                logger.error(f"Failed to delete analysis run {namespace}/{name}: {e}")
            raise

    def watch_analysis_runs(self, namespace: str = "", timeout_seconds: int = 300) -> Iterator[Dict[str, Any]]:
        w = watch.Watch()
        if namespace:
            return w.stream(
                self.custom.list_namespaced_custom_object,
                defaults.API_GROUP, defaults.API_VERSION, namespace, defaults.ANALYSIS_RUN_PLURAL,
                timeout_seconds=timeout_seconds,
            )
        return w.stream(
            self.custom.list_cluster_custom_object,
            defaults.API_GROUP, defaults.API_VERSION, defaults.ANALYSIS_RUN_PLURAL,
            timeout_seconds=timeout_seconds,
        )

    def get_analysis_template(self, namespace: str, name: str) -> Dict[str, Any]:
        try:
            return self.custom.get_namespaced_custom_object(
                defaults.API_GROUP, defaults.API_VERSION, namespace, defaults.ANALYSIS_TEMPLATE_PLURAL, name
            )
        except ApiException as e:
            logger.error(f"Failed to get analysis template {namespace}/{name}: {e}")
            raise

    def get_cluster_analysis_template(self, name: str) -> Dict[str, Any]:
        try:
            return self.custom.get_cluster_custom_object(
                defaults.API_GROUP, defaults.API_VERSION, defaults.CLUSTER_ANALYSIS_TEMPLATE_PLURAL, name
            )
        except ApiException as e:
            logger.error(f"Failed to get cluster analysis template {name}: {e}")
            raise

    def list_experiments(self, namespace: str) -> List[Experiment]:
        try:
            result = self.custom.list_namespaced_custom_object(
                defaults.API_GROUP, defaults.API_VERSION, namespace, defaults.EXPERIMENT_PLURAL
            )
            return [experiment_from_api(item) for item in result.get("items", [])]
        except ApiException as e:
            logger.error(f"Failed to list experiments in {namespace}: {e}")
            raise

    def create_experiment(self, namespace: str, body: Dict[str, Any]) -> Experiment:
        try:
            obj = self.custom.create_namespaced_custom_object(
                defaults.API_GROUP, defaults.API_VERSION, namespace, defaults.EXPERIMENT_PLURAL, body
            )
            return experiment_from_api(obj)
        except ApiException as e:
            if e.status != 409:
                logger.error(f"Failed to create experiment in {namespace}: {e}")
            raise

    def patch_experiment(self, namespace: str, name: str, patch: Dict[str, Any]) -> Experiment:
        try:
            obj = self.custom.patch_namespaced_custom_object(
                defaults.API_GROUP, defaults.API_VERSION, namespace, defaults.EXPERIMENT_PLURAL, name,
                patch, _content_type=MERGE_PATCH,
            )
            return experiment_from_api(obj)
        except ApiException as e:
            if e.status != 404:
                logger.error(f"Failed to patch experiment {namespace}/{name}: {e}")
            raise

    def get_experiment(self, namespace: str, name: str) -> Experiment:
        try:
            obj = self.custom.get_namespaced_custom_object(
                defaults.API_GROUP, defaults.API_VERSION, namespace, defaults.EXPERIMENT_PLURAL, name
            )
            return experiment_from_api(obj)
        except ApiException as e:
            if e.status != 404:
                logger.error(f"Failed to get experiment {namespace}/{name}: {e}")
            raise

    def delete_experiment(self, namespace: str, name: str) -> None:
        try:
            self.custom.delete_namespaced_custom_object(
                defaults.API_GROUP, defaults.API_VERSION, namespace, defaults.EXPERIMENT_PLURAL, name
            )
        except ApiException as e:
            if e.status != 404:
                logger.error(f"Failed to delete experiment {namespace}/{name}: {e}")
            raise
