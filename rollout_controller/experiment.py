"""
Canary experiment steps.

An `experiment` step launches an Experiment owned by the rollout that runs the canary
and/or stable pod templates side by side, optionally with analyses. The step completes
once the experiment succeeds.
"""
import copy
import logging
from typing import Dict, Any, List, Optional

from kubernetes.client.rest import ApiException

from rollout_controller import defaults
from rollout_controller import replicaset_util as rsutil
from rollout_controller.analysis import build_analysis_args, filter_to_delete, instance_id
from rollout_controller.errors import RolloutError
from rollout_controller.kube_types import Experiment, ReplicaSet, controller_ref
from rollout_controller.pause import get_pause_condition
from rollout_controller.rollout_types import AnalysisPhase, AnalysisRunArgument, PauseReason, Rollout

logger = logging.getLogger(__name__)

CANCEL_EXPERIMENT_PATCH = {"spec": {"terminate": True}}


def experiment_from_template(
    rollout: Rollout, stable_rs: ReplicaSet, new_rs: ReplicaSet
) -> Optional[Dict[str, Any]]:
    """
    Build the experiment for the rollout's current experiment step.

    Args:
        rollout: Rollout being reconciled
        stable_rs: Replica set backing `specRef: stable` templates
        new_rs: Replica set backing `specRef: canary` templates

    Returns:
        Experiment body, or None when the current step is not an experiment step

    Raises:
        RolloutError: If a template references neither the canary nor the stable spec
    """
    step = rsutil.get_current_experiment_step(rollout)
    if step is None:
        return None
    pod_hash = rsutil.compute_pod_template_hash(rollout)
    current_step = rollout.status.current_step_index or 0
    revision = rollout.metadata.annotations.get(defaults.REVISION_ANNOTATION, "")

    labels = {defaults.POD_TEMPLATE_HASH_LABEL: pod_hash}
    if instance_id(rollout):
        labels[defaults.INSTANCE_ID_LABEL] = instance_id(rollout)

    spec: Dict[str, Any] = {"templates": [], "analyses": []}
    if step.duration:
        spec["duration"] = step.duration
    if rollout.spec.progress_deadline_seconds is not None:
        spec["progressDeadlineSeconds"] = rollout.spec.progress_deadline_seconds

    for template_step in step.templates:
        if template_step.spec_ref == "canary":
            source = new_rs
        elif template_step.spec_ref == "stable":
            source = stable_rs
        else:
            raise RolloutError("Invalid template step SpecRef: must be canary or stable")

        pod_template = copy.deepcopy(source.template)
        selector = dict(source.selector)
        metadata = pod_template.setdefault("metadata", {})
        if template_step.metadata.labels:
            metadata.setdefault("labels", {}).update(template_step.metadata.labels)
            selector.update(template_step.metadata.labels)
        if template_step.metadata.annotations:
            metadata.setdefault("annotations", {}).update(template_step.metadata.annotations)

        template: Dict[str, Any] = {
            "name": template_step.name,
            "template": pod_template,
            "selector": {"matchLabels": selector},
            "minReadySeconds": source.min_ready_seconds,
        }
        if template_step.replicas is not None:
            template["replicas"] = template_step.replicas
        if template_step.weight is not None:
            template["service"] = {}
        spec["templates"].append(template)

    for analysis in step.analyses:
        args = [AnalysisRunArgument.model_validate(a) for a in analysis.get("args") or []]
        ref = {
            "name": analysis.get("name", ""),
            "templateName": analysis.get("templateName", ""),
            "clusterScope": bool(analysis.get("clusterScope", False)),
            "args": build_analysis_args(args, stable_rs, new_rs, rollout),
        }
        if analysis.get("requiredForCompletion"):
            ref["requiredForCompletion"] = True
        spec["analyses"].append(ref)

    return {
        "apiVersion": f"{defaults.API_GROUP}/{defaults.API_VERSION}",
        "kind": "Experiment",
        "metadata": {
            "name": f"{rollout.name}-{pod_hash}-{revision}-{current_step}",
            "namespace": rollout.namespace,
            "labels": labels,
            "annotations": {defaults.REVISION_ANNOTATION: revision},
            "ownerReferences": [controller_ref(rollout).to_api()],
        },
        "spec": spec,
    }


class ExperimentMixin:
    """Rollout context methods driving experiment steps."""

    def reconcile_experiments(self) -> None:
        if self.pause_context.is_aborted() or self.rollout.status.promote_full:
            self.cancel_experiments(self.other_exs + [self.current_ex])
            return

        if get_pause_condition(self.rollout, PauseReason.INCONCLUSIVE_ANALYSIS) is not None:
            return

        step, index = rsutil.get_current_canary_step(self.rollout)
        current = self.current_ex
        if step is not None and step.experiment is not None:
            self.log.info(f"Reconciling experiment step (stepIndex: {index})")
            if current is None:
                if self.stable_rs is None:
                    self.log.info("Cannot create experiment until stableRS exists")
                    return
                body = experiment_from_template(self.rollout, self.stable_rs, self.new_rs)
                current = self._create_experiment_with_collision_handling(body)
                self.recorder.normal(self.rollout, "ExperimentCreated", f"Created Experiment '{current.name}'")

            if current.phase == AnalysisPhase.INCONCLUSIVE:
                self.pause_context.add_pause_condition(PauseReason.INCONCLUSIVE_EXPERIMENT)
            elif current.phase in (AnalysisPhase.ERROR, AnalysisPhase.FAILED):
                self.pause_context.add_abort(current.message)
            elif current.phase != AnalysisPhase.SUCCESSFUL:
                self.set_current_experiment(current)

        other_exs = list(self.other_exs)
        if current is not None and (step is None or step.experiment is None):
            other_exs.append(current)
        self.cancel_experiments(other_exs)

        to_delete = filter_to_delete(
            other_exs,
            self.all_rss,
            defaults.successful_run_history_limit(self.rollout, self.settings.ANALYSIS_SUCCESSFUL_HISTORY_LIMIT),
            defaults.unsuccessful_run_history_limit(self.rollout, self.settings.ANALYSIS_UNSUCCESSFUL_HISTORY_LIMIT),
        )
        self.delete_experiments(to_delete)

    def _create_experiment_with_collision_handling(self, body: Dict[str, Any]) -> Experiment:
        namespace = body["metadata"]["namespace"]
        base_name = body["metadata"]["name"]
        collision = 1
        while True:
            try:
                return self.client.create_experiment(namespace, body)
            except ApiException as e:
                if e.status != 409:
                    raise
            existing = self.client.get_experiment(namespace, body["metadata"]["name"])
            same_spec = existing.spec.get("templates") == body["spec"]["templates"]
            same_owner = existing.owner_uid == self.rollout.metadata.uid
            self.log.info(
                f"Encountered collision of existing experiment {existing.name} "
                f"(phase: {existing.phase.value}, equal: {same_spec}, controllerUIDEqual: {same_owner})"
            )
            if not existing.phase.completed and same_spec and same_owner:
                return existing
            body["metadata"]["name"] = f"{base_name}-{collision}"
            collision += 1

    def cancel_experiments(self, experiments: List[Optional[Experiment]]) -> None:
        for ex in experiments:
            if ex is None or ex.terminate or ex.phase.completed:
                continue
            self.log.info(f"Canceling other running experiment '{ex.name}' owned by rollout")
            try:
                self.client.patch_experiment(ex.namespace, ex.name, CANCEL_EXPERIMENT_PATCH)
            except ApiException as e:
                if e.status != 404:
                    raise

    def delete_experiments(self, experiments: List[Experiment]) -> None:
        for ex in experiments:
            if ex.deletion_timestamp is not None:
                continue
            self.log.info(f"Trying to cleanup experiment '{ex.name}'")
            try:
                self.client.delete_experiment(ex.namespace, ex.name)
            except ApiException as e:
                if e.status != 404:
                    raise
