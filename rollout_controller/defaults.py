"""
Default values, label keys and annotation keys shared by the reconciliation code.
"""
API_GROUP = "argoproj.io"
API_VERSION = "v1alpha1"
ROLLOUT_PLURAL = "rollouts"
ANALYSIS_RUN_PLURAL = "analysisruns"
ANALYSIS_TEMPLATE_PLURAL = "analysistemplates"
CLUSTER_ANALYSIS_TEMPLATE_PLURAL = "clusteranalysistemplates"
EXPERIMENT_PLURAL = "experiments"
ROLLOUT_KIND = "Rollout"

# Labels
POD_TEMPLATE_HASH_LABEL = "rollouts-pod-template-hash"
ROLLOUT_TYPE_LABEL = "rollout-type"
ROLLOUT_TYPE_STEP = "Step"
ROLLOUT_TYPE_BACKGROUND = "Background"
ROLLOUT_TYPE_PRE_PROMOTION = "PrePromotion"
ROLLOUT_TYPE_POST_PROMOTION = "PostPromotion"
STEP_INDEX_LABEL = "step-index"
INSTANCE_ID_LABEL = "argo-rollouts.argoproj.io/controller-instance-id"

# Annotations
REVISION_ANNOTATION = "rollout.argoproj.io/revision"
DESIRED_REPLICAS_ANNOTATION = "rollout.argoproj.io/desired-replicas"
EPHEMERAL_METADATA_ANNOTATION = "rollout.argoproj.io/ephemeral-metadata"
SCALE_DOWN_DEADLINE_ANNOTATION = "argo-rollouts.argoproj.io/scale-down-deadline"
MANAGED_BY_ANNOTATION = "argo-rollouts.argoproj.io/managed-by-rollouts"

# Spec defaults
DEFAULT_REPLICAS = 1
DEFAULT_REVISION_HISTORY_LIMIT = 10
DEFAULT_MAX_SURGE = "25%"
DEFAULT_MAX_UNAVAILABLE = "25%"
DEFAULT_PROGRESS_DEADLINE_SECONDS = 600
DEFAULT_SCALE_DOWN_DELAY_SECONDS = 30
DEFAULT_ABORT_SCALE_DOWN_DELAY_SECONDS = 30
DEFAULT_AUTO_PROMOTION_ENABLED = True
MAX_INT32 = 2 ** 31 - 1
MAX_TRAFFIC_WEIGHT = 100


def replicas_or_default(replicas):
    return DEFAULT_REPLICAS if replicas is None else replicas


def revision_history_limit(rollout) -> int:
    limit = rollout.spec.revision_history_limit
    return DEFAULT_REVISION_HISTORY_LIMIT if limit is None else limit


def progress_deadline_seconds(rollout) -> int:
    deadline = rollout.spec.progress_deadline_seconds
    return DEFAULT_PROGRESS_DEADLINE_SECONDS if deadline is None else deadline


def auto_promotion_enabled(rollout) -> bool:
    blue_green = rollout.spec.strategy.blue_green
    if blue_green is None or blue_green.auto_promotion_enabled is None:
        return DEFAULT_AUTO_PROMOTION_ENABLED
    return blue_green.auto_promotion_enabled


def scale_down_delay_seconds(rollout) -> int:
    """Delay before a demoted replica set is scaled down (0 for basic canaries)."""
    strategy = rollout.spec.strategy
    if strategy.blue_green is not None:
        delay = strategy.blue_green.scale_down_delay_seconds
        return DEFAULT_SCALE_DOWN_DELAY_SECONDS if delay is None else delay
    if strategy.canary is not None and strategy.canary.traffic_routing is not None:
        delay = strategy.canary.scale_down_delay_seconds
        return DEFAULT_SCALE_DOWN_DELAY_SECONDS if delay is None else delay
    return 0


def abort_scale_down_delay_seconds(rollout):
    """
    Delay before the new replica set is scaled down after an abort.

    Returns:
        Tuple of (delay seconds or None when scale down is immediate, whether it was set explicitly)
    """
    strategy = rollout.spec.strategy
    if strategy.blue_green is not None:
        delay = strategy.blue_green.abort_scale_down_delay_seconds
        if delay is not None:
            return (None if delay == 0 else delay), True
    elif strategy.canary is not None:
        if strategy.canary.traffic_routing is None:
            return None, False
        delay = strategy.canary.abort_scale_down_delay_seconds
        if delay is not None:
            return (None if delay == 0 else delay), True
    return DEFAULT_ABORT_SCALE_DOWN_DELAY_SECONDS, False


def scale_down_revision_limit(rollout) -> int:
    strategy = rollout.spec.strategy
    if strategy.blue_green is not None and strategy.blue_green.scale_down_delay_revision_limit is not None:
        return strategy.blue_green.scale_down_delay_revision_limit
    if strategy.canary is not None and strategy.canary.scale_down_delay_revision_limit is not None:
        return strategy.canary.scale_down_delay_revision_limit
    return MAX_INT32


def successful_run_history_limit(rollout, fallback: int) -> int:
    analysis = rollout.spec.analysis
    if analysis is not None and analysis.successful_run_history_limit is not None:
        return analysis.successful_run_history_limit
    return fallback


def unsuccessful_run_history_limit(rollout, fallback: int) -> int:
    analysis = rollout.spec.analysis
    if analysis is not None and analysis.unsuccessful_run_history_limit is not None:
        return analysis.unsuccessful_run_history_limit
    return fallback
