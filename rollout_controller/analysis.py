"""
Analysis run orchestration.

A rollout has up to four analysis roles: the canary step and background runs, and the
blue-green pre- and post-promotion runs. Each role is described once in ROLES and the
reconciliation code dispatches on the role tag.
"""
import copy
import logging
import re
from dataclasses import dataclass
from typing import Dict, Any, Iterable, List, Optional

from kubernetes.client.rest import ApiException

from rollout_controller import defaults
from rollout_controller import replicaset_util as rsutil
from rollout_controller.errors import AnalysisRunError
from rollout_controller.kube_types import AnalysisRun, ReplicaSet, controller_ref
from rollout_controller.pause import get_pause_condition
from rollout_controller.rollout_types import (
    AnalysisPhase,
    AnalysisRunArgument,
    PauseReason,
    Rollout,
    RolloutAnalysis,
    RolloutAnalysisRunStatus,
    RolloutStatus,
)

logger = logging.getLogger(__name__)

CANCEL_ANALYSIS_RUN_PATCH = {"spec": {"terminate": True}}
UNSUCCESSFUL_PHASES = (AnalysisPhase.FAILED, AnalysisPhase.ERROR, AnalysisPhase.INCONCLUSIVE)


@dataclass(frozen=True)
class AnalysisRole:
    """Where one analysis role lives in the rollout status."""
    tag: str
    strategy: str
    status_field: str

    def get_status(self, status: RolloutStatus) -> Optional[RolloutAnalysisRunStatus]:
        return getattr(getattr(status, self.strategy), self.status_field)

    def set_status(self, status: RolloutStatus, value: Optional[RolloutAnalysisRunStatus]) -> None:
        setattr(getattr(status, self.strategy), self.status_field, value)

    def infix(self, step_index: Optional[int] = None) -> str:
        if self.tag == defaults.ROLLOUT_TYPE_PRE_PROMOTION:
            return "pre"
        if self.tag == defaults.ROLLOUT_TYPE_POST_PROMOTION:
            return "post"
        if self.tag == defaults.ROLLOUT_TYPE_STEP:
            return str(step_index)
        return ""

    def labels(self, pod_hash: str, instance_id: str = "", step_index: Optional[int] = None) -> Dict[str, str]:
        labels = {defaults.POD_TEMPLATE_HASH_LABEL: pod_hash, defaults.ROLLOUT_TYPE_LABEL: self.tag}
        if self.tag == defaults.ROLLOUT_TYPE_STEP:
            labels[defaults.STEP_INDEX_LABEL] = str(step_index)
        if instance_id:
            labels[defaults.INSTANCE_ID_LABEL] = instance_id
        return labels


ROLES: Dict[str, AnalysisRole] = {
    defaults.ROLLOUT_TYPE_STEP: AnalysisRole(
        defaults.ROLLOUT_TYPE_STEP, "canary", "current_step_analysis_run_status"
    ),
    defaults.ROLLOUT_TYPE_BACKGROUND: AnalysisRole(
        defaults.ROLLOUT_TYPE_BACKGROUND, "canary", "current_background_analysis_run_status"
    ),
    defaults.ROLLOUT_TYPE_PRE_PROMOTION: AnalysisRole(
        defaults.ROLLOUT_TYPE_PRE_PROMOTION, "blue_green", "pre_promotion_analysis_run_status"
    ),
    defaults.ROLLOUT_TYPE_POST_PROMOTION: AnalysisRole(
        defaults.ROLLOUT_TYPE_POST_PROMOTION, "blue_green", "post_promotion_analysis_run_status"
    ),
}


def roles_for(rollout: Rollout) -> List[AnalysisRole]:
    strategy = "blue_green" if rollout.spec.strategy.blue_green is not None else "canary"
    return [role for role in ROLES.values() if role.strategy == strategy]


def instance_id(rollout: Rollout) -> str:
    return rollout.metadata.labels.get(defaults.INSTANCE_ID_LABEL, "")


def classify_analysis_runs(rollout: Rollout, runs: Iterable[AnalysisRun]):
    """
    Split owned analysis runs into the current run of each role and the rest.

    Returns:
        Tuple of (current runs keyed by role tag, other runs)
    """
    runs = list(runs)
    current: Dict[str, AnalysisRun] = {}
    for role in ROLES.values():
        status = role.get_status(rollout.status)
        if status is None:
            continue
        for run in runs:
            if run.name == status.name:
                current[role.tag] = run
                break
    current_names = {run.name for run in current.values()}
    others = [run for run in runs if run.name not in current_names]
    return current, others


def needs_new_analysis_run(current: Optional[AnalysisRun], rollout: Rollout) -> bool:
    if current is None:
        return True
    if rollout.status.controller_pause and get_pause_condition(rollout, PauseReason.BLUE_GREEN_PAUSE) is None:
        return current.phase == AnalysisPhase.INCONCLUSIVE
    return rollout.status.aborted_at is not None


def skip_pre_promotion_analysis_run(rollout: Rollout, new_rs: Optional[ReplicaSet]) -> bool:
    pod_hash = new_rs.pod_template_hash if new_rs is not None else ""
    active = rollout.status.blue_green.active_selector
    if rollout.status.stable_rs == pod_hash or active == "" or active == pod_hash or pod_hash == "":
        return True
    preview_count = rollout.spec.strategy.blue_green.preview_replica_count
    if preview_count is not None:
        return new_rs.replicas != preview_count or new_rs.available_replicas != preview_count
    return not rsutil.is_saturated(rollout, new_rs)


def skip_post_promotion_analysis_run(rollout: Rollout, new_rs: Optional[ReplicaSet]) -> bool:
    pod_hash = new_rs.pod_template_hash if new_rs is not None else ""
    return (
        rollout.status.stable_rs == pod_hash
        or rollout.status.blue_green.active_selector != pod_hash
        or pod_hash == ""
        or not rsutil.is_saturated(rollout, new_rs)
    )


def filter_to_delete(objects: List[Any], all_rss: List[ReplicaSet], limit_successful: int, limit_unsuccessful: int) -> List[Any]:
    """
    Pick analysis runs or experiments that should be garbage collected.

    Objects whose replica set is gone (or being deleted) always go. Of the rest, only the
    newest `limit_successful` successful and `limit_unsuccessful` unsuccessful ones are kept.
    """
    deleting = {rs.pod_template_hash: rs.deletion_timestamp is not None for rs in all_rss if rs.pod_template_hash}
    ordered = sorted(
        objects,
        key=lambda o: o.creation_timestamp.timestamp() if o.creation_timestamp else 0,
        reverse=True,
    )
    to_delete = []
    kept_successful = 0
    kept_unsuccessful = 0
    for obj in ordered:
        pod_hash = obj.labels.get(defaults.POD_TEMPLATE_HASH_LABEL)
        if pod_hash is None or pod_hash not in deleting or deleting[pod_hash]:
            to_delete.append(obj)
            continue
        if obj.phase == AnalysisPhase.SUCCESSFUL:
            if kept_successful < limit_successful:
                kept_successful += 1
            else:
                to_delete.append(obj)
        elif obj.phase in UNSUCCESSFUL_PHASES:
            if kept_unsuccessful < limit_unsuccessful:
                kept_unsuccessful += 1
            else:
                to_delete.append(obj)
    return to_delete


_FIELD_KEY_RE = re.compile(r"^metadata\.(labels|annotations)\['(.+)'\]$")


def _extract_field(rollout: Rollout, path: str) -> str:
    match = _FIELD_KEY_RE.match(path)
    if match:
        return getattr(rollout.metadata, match.group(1)).get(match.group(2), "")
    value: Any = rollout.to_api()
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            raise AnalysisRunError(f"field path '{path}' not found in rollout")
        value = value[part]
    return value if isinstance(value, str) else str(value)


def build_analysis_args(
    args: List[AnalysisRunArgument],
    stable_rs: Optional[ReplicaSet],
    new_rs: Optional[ReplicaSet],
    rollout: Rollout,
) -> List[Dict[str, str]]:
    """
    Resolve rollout analysis arguments to name/value pairs.

    Raises:
        AnalysisRunError: If a fieldRef cannot be resolved
    """
    resolved = []
    for arg in args:
        value = arg.value
        if arg.value_from is not None:
            if arg.value_from.pod_template_hash_value == "Latest":
                value = new_rs.pod_template_hash if new_rs is not None else ""
            elif arg.value_from.pod_template_hash_value == "Stable":
                value = stable_rs.pod_template_hash if stable_rs is not None else ""
            elif arg.value_from.field_ref is not None:
                value = _extract_field(rollout, arg.value_from.field_ref.get("fieldPath", ""))
        resolved.append({"name": arg.name, "value": value if value is not None else ""})
    return resolved


def merge_analysis_templates(templates: List[Dict[str, Any]], args: List[Dict[str, str]]) -> Dict[str, Any]:
    """
    Combine analysis templates into one analysis run spec.

    Raises:
        AnalysisRunError: On duplicate metric names, conflicting template argument values
            or arguments left without a value
    """
    metrics: List[Dict[str, Any]] = []
    metric_names = set()
    merged_args: Dict[str, Dict[str, Any]] = {}
    dry_run: List[Dict[str, Any]] = []
    retention: List[Dict[str, Any]] = []
    for template in templates:
        spec = template.get("spec") or {}
        for metric in spec.get("metrics") or []:
            if metric.get("name") in metric_names:
                raise AnalysisRunError(f"two metrics have the same name '{metric.get('name')}'")
            metric_names.add(metric.get("name"))
            metrics.append(copy.deepcopy(metric))
        for arg in spec.get("args") or []:
            existing = merged_args.get(arg["name"])
            if existing is not None and existing.get("value") is not None and arg.get("value") is not None:
                if existing["value"] != arg["value"]:
                    raise AnalysisRunError(f"Argument `{arg['name']}` specified multiple times with different values")
                continue
            if existing is None or existing.get("value") is None:
                merged_args[arg["name"]] = copy.deepcopy(arg)
        dry_run.extend(copy.deepcopy(spec.get("dryRun") or []))
        retention.extend(copy.deepcopy(spec.get("measurementRetention") or []))

    for arg in args:
        merged_args.setdefault(arg["name"], {"name": arg["name"]})["value"] = arg["value"]

    for name, arg in merged_args.items():
        if arg.get("value") is None and arg.get("valueFrom") is None:
            raise AnalysisRunError(f"args.{name} was not resolved")

    spec = {"metrics": metrics, "args": list(merged_args.values())}
    if dry_run:
        spec["dryRun"] = dry_run
    if retention:
        spec["measurementRetention"] = retention
    return spec


class AnalysisMixin:
    """Rollout context methods creating, tracking and cleaning up analysis runs."""

    def reconcile_analysis_runs(self) -> None:
        rollout = self.rollout
        aborted = self.pause_context.is_aborted()
        rollback_to_scale_down_delay = rsutil.has_scale_down_deadline(self.new_rs)
        initial_deploy = rollout.status.stable_rs == ""
        if aborted or rollout.status.promote_full or rollback_to_scale_down_delay or initial_deploy:
            self.log.info(
                f"Skipping analysis: isAborted: {aborted}, promoteFull: {rollout.status.promote_full}, "
                f"rollbackToScaleDownDelay: {rollback_to_scale_down_delay}, initialDeploy: {initial_deploy}"
            )
            self.set_current_analysis_runs(self.current_ars)
            self.cancel_analysis_runs(list(self.current_ars.values()) + self.other_ars)
            return

        new_current: Dict[str, AnalysisRun] = {}
        if rollout.spec.strategy.canary is not None:
            self._put(new_current, defaults.ROLLOUT_TYPE_STEP, self.reconcile_step_analysis_run())
            self._put(new_current, defaults.ROLLOUT_TYPE_BACKGROUND, self.reconcile_background_analysis_run())
        if rollout.spec.strategy.blue_green is not None:
            pre = self.reconcile_pre_promotion_analysis_run()
            self.set_pause_or_abort(pre)
            self._put(new_current, defaults.ROLLOUT_TYPE_PRE_PROMOTION, pre)
            post = self.reconcile_post_promotion_analysis_run()
            self.set_pause_or_abort(post)
            self._put(new_current, defaults.ROLLOUT_TYPE_POST_PROMOTION, post)
        self.set_current_analysis_runs(new_current)

        current_names = {run.name for run in new_current.values()}
        other_ars = []
        for run in self.other_ars:
            if run.name in current_names:
                self.log.info(f"Rescued {run.name} from inadvertent termination")
                continue
            other_ars.append(run)
        self.cancel_analysis_runs(other_ars)

        to_delete = filter_to_delete(
            other_ars,
            self.all_rss,
            defaults.successful_run_history_limit(rollout, self.settings.ANALYSIS_SUCCESSFUL_HISTORY_LIMIT),
            defaults.unsuccessful_run_history_limit(rollout, self.settings.ANALYSIS_UNSUCCESSFUL_HISTORY_LIMIT),
        )
        self.delete_analysis_runs(to_delete)
        self.emit_analysis_run_status_changes(new_current)

    @staticmethod
    def _put(runs: Dict[str, AnalysisRun], tag: str, run: Optional[AnalysisRun]) -> None:
        if run is not None:
            runs[tag] = run

    def set_pause_or_abort(self, run: Optional[AnalysisRun]) -> None:
        if run is None:
            return
        if run.phase == AnalysisPhase.INCONCLUSIVE:
            self.pause_context.add_pause_condition(PauseReason.INCONCLUSIVE_ANALYSIS)
        elif run.phase in (AnalysisPhase.ERROR, AnalysisPhase.FAILED):
            self.pause_context.add_abort(run.message)

    def reconcile_pre_promotion_analysis_run(self) -> Optional[AnalysisRun]:
        current = self.current_ars.get(defaults.ROLLOUT_TYPE_PRE_PROMOTION)
        analysis = self.rollout.spec.strategy.blue_green.pre_promotion_analysis
        if analysis is None:
            self.cancel_analysis_runs([current])
            return None
        self.log.info("Reconciling Pre Promotion Analysis")

        if skip_pre_promotion_analysis_run(self.rollout, self.new_rs):
            self.cancel_analysis_runs([current])
            return current
        if get_pause_condition(self.rollout, PauseReason.INCONCLUSIVE_ANALYSIS) is not None:
            return current
        if needs_new_analysis_run(current, self.rollout):
            current = self.create_analysis_run(analysis, ROLES[defaults.ROLLOUT_TYPE_PRE_PROMOTION])
            self.log.info(f"Created Pre Promotion AnalysisRun '{current.name}'")
        return current

    def reconcile_post_promotion_analysis_run(self) -> Optional[AnalysisRun]:
        current = self.current_ars.get(defaults.ROLLOUT_TYPE_POST_PROMOTION)
        analysis = self.rollout.spec.strategy.blue_green.post_promotion_analysis
        if analysis is None:
            self.cancel_analysis_runs([current])
            return None
        self.log.info("Reconciling Post Promotion Analysis")

        if skip_post_promotion_analysis_run(self.rollout, self.new_rs) or not self.are_targets_verified():
            self.cancel_analysis_runs([current])
            return current
        if get_pause_condition(self.rollout, PauseReason.INCONCLUSIVE_ANALYSIS) is not None:
            return current
        if needs_new_analysis_run(current, self.rollout):
            current = self.create_analysis_run(analysis, ROLES[defaults.ROLLOUT_TYPE_POST_PROMOTION])
            self.log.info(f"Created Post Promotion AnalysisRun '{current.name}'")
        return current

    def reconcile_background_analysis_run(self) -> Optional[AnalysisRun]:
        rollout = self.rollout
        current = self.current_ars.get(defaults.ROLLOUT_TYPE_BACKGROUND)
        analysis = rollout.spec.strategy.canary.analysis
        if analysis is None:
            self.cancel_analysis_runs([current])
            return None

        fully_promoted = rollout.status.stable_rs == rollout.status.current_pod_hash
        if (
            fully_promoted
            or rollout.status.stable_rs == ""
            or rollout.status.current_pod_hash == ""
            or rsutil.before_starting_step(rollout)
        ):
            return None
        if get_pause_condition(rollout, PauseReason.INCONCLUSIVE_ANALYSIS) is not None:
            return current
        if needs_new_analysis_run(current, rollout):
            current = self.create_analysis_run(analysis, ROLES[defaults.ROLLOUT_TYPE_BACKGROUND])
            self.log.info(f"Created background AnalysisRun '{current.name}'")
            return current
        self.set_pause_or_abort(current)
        return current

    def reconcile_step_analysis_run(self) -> Optional[AnalysisRun]:
        rollout = self.rollout
        step, index = rsutil.get_current_canary_step(rollout)
        current = self.current_ars.get(defaults.ROLLOUT_TYPE_STEP)
        if rollout.status.pause_conditions or rollout.status.abort:
            return current
        if step is None or step.analysis is None or index is None:
            self.cancel_analysis_runs([current])
            return None

        self.log.info(f"Reconciling analysis step (stepIndex: {index})")
        if needs_new_analysis_run(current, rollout):
            current = self.create_analysis_run(step.analysis, ROLES[defaults.ROLLOUT_TYPE_STEP], step_index=index)
            self.log.info(f"Created AnalysisRun '{current.name}' for step '{index}'")
            return current
        self.set_pause_or_abort(current)
        return current

    def create_analysis_run(
        self, analysis: RolloutAnalysis, role: AnalysisRole, step_index: Optional[int] = None
    ) -> AnalysisRun:
        """
        Create the analysis run for a role, retrying with a numeric suffix on name collisions.

        Raises:
            AnalysisRunError: If the run cannot be built from its templates
            ApiException: If the API rejects the run
        """
        pod_hash = self.new_rs.pod_template_hash if self.new_rs is not None else ""
        if pod_hash == "":
            name = self.new_rs.name if self.new_rs is not None else ""
            raise AnalysisRunError(f"Latest ReplicaSet '{name}' has no pod hash in the labels")

        args = build_analysis_args(analysis.args, self.stable_rs, self.new_rs, self.rollout)
        body = self.new_analysis_run_from_rollout(
            analysis, args, pod_hash, role.infix(step_index), role.labels(pod_hash, instance_id(self.rollout), step_index)
        )
        return self._create_with_collision_counter(body)

    def new_analysis_run_from_rollout(
        self, analysis: RolloutAnalysis, args: List[Dict[str, str]], pod_hash: str, infix: str, labels: Dict[str, str]
    ) -> Dict[str, Any]:
        rollout = self.rollout
        revision = rollout.metadata.annotations.get(defaults.REVISION_ANNOTATION, "")
        name = "-".join(part for part in (rollout.name, pod_hash, revision, infix) if part)

        templates = []
        for ref in analysis.templates:
            try:
                if ref.cluster_scope:
                    templates.append(self.client.get_cluster_analysis_template(ref.template_name))
                else:
                    templates.append(self.client.get_analysis_template(rollout.namespace, ref.template_name))
            except ApiException as e:
                if e.status == 404:
                    kind = "ClusterAnalysisTemplate" if ref.cluster_scope else "AnalysisTemplate"
                    self.log.warning(f"⚠️ {kind} '{ref.template_name}' not found")
                raise

        spec = merge_analysis_templates(templates, args)
        if analysis.dry_run:
            spec["dryRun"] = spec.get("dryRun", []) + analysis.dry_run
        if analysis.measurement_retention:
            spec["measurementRetention"] = spec.get("measurementRetention", []) + analysis.measurement_retention

        run_labels = dict(labels)
        run_labels.update(analysis.analysis_run_metadata.labels)
        if rollout.spec.selector is not None:
            run_labels.update(rollout.spec.selector.match_labels)
        annotations = {defaults.REVISION_ANNOTATION: revision}
        annotations.update(analysis.analysis_run_metadata.annotations)

        return {
            "apiVersion": f"{defaults.API_GROUP}/{defaults.API_VERSION}",
            "kind": "AnalysisRun",
            "metadata": {
                "name": name,
                "namespace": rollout.namespace,
                "labels": run_labels,
                "annotations": annotations,
                "ownerReferences": [controller_ref(rollout).to_api()],
            },
            "spec": spec,
        }

    def _create_with_collision_counter(self, body: Dict[str, Any]) -> AnalysisRun:
        namespace = body["metadata"]["namespace"]
        base_name = body["metadata"]["name"]
        collision = 1
        while True:
            try:
                return self.client.create_analysis_run(namespace, body)
            except ApiException as e:
                if e.status != 409:
                    raise
            existing = self.client.get_analysis_run(namespace, body["metadata"]["name"])
            same_owner = existing.owner_uid == self.rollout.metadata.uid
            same_spec = existing.spec.get("metrics") == body["spec"].get("metrics") and existing.spec.get("args") == body["spec"].get("args")
            self.log.info(
                f"Encountered collision of existing analysis run {existing.name} "
                f"(phase: {existing.phase.value}, equal: {same_spec}, controllerUIDEqual: {same_owner})"
            )
            if not existing.phase.completed and same_spec and same_owner:
                return existing
            body["metadata"]["name"] = f"{base_name}.{collision}"
            collision += 1

    def cancel_analysis_runs(self, runs: List[Optional[AnalysisRun]]) -> None:
        for run in runs:
            if run is None or run.terminate or run.phase.completed:
                continue
            self.log.info(f"Canceling the analysis run '{run.name}'")
            try:
                self.client.patch_analysis_run(run.namespace, run.name, CANCEL_ANALYSIS_RUN_PATCH)
            except ApiException as e:
                if e.status == 404:
                    self.log.warning(f"⚠️ AnalysisRun '{run.name}' not found")
                    continue
                raise

    def delete_analysis_runs(self, runs: List[AnalysisRun]) -> None:
        for run in runs:
            if run.deletion_timestamp is not None:
                continue
            self.log.info(f"Trying to cleanup analysis run '{run.name}'")
            try:
                self.client.delete_analysis_run(run.namespace, run.name)
            except ApiException as e:
                if e.status != 404:
                    raise

    def emit_analysis_run_status_changes(self, current: Dict[str, AnalysisRun]) -> None:
        for role in roles_for(self.rollout):
            run = current.get(role.tag)
            if run is None:
                continue
            previous = role.get_status(self.rollout.status)
            if previous is None:
                if run.phase == AnalysisPhase.PENDING:
                    continue
            elif previous.name != run.name or previous.status == run.phase:
                continue
            previous_str = previous.status.value if previous is not None else "NoPreviousStatus"
            message = (
                f"{role.tag} Analysis Run '{run.name}' Status New: '{run.phase.value}' Previous: '{previous_str}'"
            )
            reason = f"AnalysisRun{run.phase.value}"
            if run.phase in (AnalysisPhase.FAILED, AnalysisPhase.ERROR):
                self.recorder.warning(self.rollout, reason, message)
            else:
                self.recorder.normal(self.rollout, reason, message)
