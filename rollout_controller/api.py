"""
Health, status and action API for the rollout controller.

Action endpoints patch the rollout exactly as the kubectl plugin would; the controller
picks the change up through its rollout watch.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from kubernetes.client.rest import ApiException

from rollout_controller import replicaset_util as rsutil
from rollout_controller import timeutil
from rollout_controller.config import settings
from rollout_controller.pause import get_pause_condition
from rollout_controller.rollout_types import PauseReason, Rollout

logger = logging.getLogger(__name__)

# Set by configure() at startup
kube_client = None
controller = None

# -----------------------------------------------------------------------------
# FastAPI app + CORS
# -----------------------------------------------------------------------------
app = FastAPI(title="Agrarian Rollout Controller", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def configure(client, rollout_controller=None) -> FastAPI:
    """Attach the Kubernetes client and (optionally) the running controller to the app."""
    global kube_client, controller
    kube_client = client
    controller = rollout_controller
    return app


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _client():
    if kube_client is None:
        raise HTTPException(status_code=503, detail="Kubernetes client not initialized")
    return kube_client


def _get_rollout(namespace: str, name: str) -> Rollout:
    try:
        return _client().get_rollout(namespace, name)
    except ApiException as e:
        if e.status == 404:
            raise HTTPException(status_code=404, detail=f"Rollout {namespace}/{name} not found")
        logger.error(f"❌ Error reading rollout {namespace}/{name}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to read rollout: {e.reason}")


def summarize(rollout: Rollout) -> Dict[str, Any]:
    status = rollout.status
    strategy = "blueGreen" if rollout.spec.strategy.blue_green is not None else "canary"
    summary = {
        "name": rollout.name,
        "namespace": rollout.namespace,
        "strategy": strategy,
        "phase": status.phase.value if status.phase else None,
        "message": status.message,
        "paused": rollout.spec.paused or bool(status.pause_conditions),
        "abort": status.abort,
        "stableRS": status.stable_rs,
        "currentPodHash": status.current_pod_hash,
        "replicas": rollout.spec.replicas,
        "updatedReplicas": status.updated_replicas,
        "readyReplicas": status.ready_replicas,
        "availableReplicas": status.available_replicas,
    }
    if strategy == "canary":
        summary["currentStepIndex"] = status.current_step_index
        summary["steps"] = len(rollout.spec.strategy.canary.steps) if rollout.spec.strategy.canary else 0
    else:
        summary["activeSelector"] = status.blue_green.active_selector
        summary["previewSelector"] = status.blue_green.preview_selector
    return summary


def promote_patches(rollout: Rollout, full: bool = False) -> Tuple[Optional[dict], Optional[dict]]:
    """
    Spec and status patches that promote a rollout.

    A plain promote clears the pause conditions and, for a canary, moves past the current
    step unless it is waiting on inconclusive analysis. A full promote skips every remaining
    step and analysis.

    Returns:
        Tuple of (spec patch, status patch), either of which may be None
    """
    spec_patch = {"spec": {"paused": False}} if rollout.spec.paused else None
    if full:
        if rollout.status.promote_full:
            return spec_patch, None
        return spec_patch, {"status": {"promoteFull": True}}

    status_patch: Dict[str, Any] = {"status": {"pauseConditions": []}}
    canary = rollout.spec.strategy.canary
    if canary is not None and canary.steps:
        _, index = rsutil.get_current_canary_step(rollout)
        inconclusive = get_pause_condition(rollout, PauseReason.INCONCLUSIVE_ANALYSIS) is not None
        if index < len(canary.steps) and not inconclusive:
            index += 1
            # the next step starts unpaused, it must not be read as externally resumed
            status_patch["status"]["controllerPause"] = False
        status_patch["status"]["currentStepIndex"] = index
    return spec_patch, status_patch


def _apply(namespace: str, name: str, action: str, spec_patch: Optional[dict], status_patch: Optional[dict]):
    client = _client()
    try:
        if status_patch is not None:
            client.patch_rollout_status(namespace, name, status_patch)
        if spec_patch is not None:
            client.patch_rollout(namespace, name, spec_patch)
    except ApiException as e:
        logger.error(f"❌ Failed to {action} rollout {namespace}/{name}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to {action} rollout: {e.reason}")
    if controller is not None:
        controller.enqueue(f"{namespace}/{name}")
    logger.info(f"✅ Rollout {namespace}/{name}: {action}")
    return {"success": True, "message": f"Rollout '{name}' {action} requested"}


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------
@app.get("/health")
async def health():
    return {"status": "healthy"}


@app.get("/api/health")
async def api_health():
    return {"status": "healthy", "app": settings.APP_NAME, "env": settings.APP_ENV}


@app.get("/api/controller/status")
async def controller_status():
    """Worker, queue and cache counters of the running controller."""
    if controller is None:
        return {"running": False}
    return controller.status()


@app.get("/api/rollouts")
async def list_rollouts(namespace: str = "") -> List[Dict[str, Any]]:
    try:
        rollouts = _client().list_rollouts(namespace or settings.K8S_NAMESPACE)
    except ApiException as e:
        logger.error(f"❌ Error listing rollouts: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to list rollouts: {e.reason}")
    return [summarize(r) for r in rollouts]


@app.get("/api/rollouts/{namespace}/{name}")
async def get_rollout(namespace: str, name: str):
    return summarize(_get_rollout(namespace, name))


# -----------------------------------------------------------------------------
# Actions
# -----------------------------------------------------------------------------
@app.post("/api/rollouts/{namespace}/{name}/promote")
async def promote(namespace: str, name: str):
    rollout = _get_rollout(namespace, name)
    spec_patch, status_patch = promote_patches(rollout)
    return _apply(namespace, name, "promote", spec_patch, status_patch)


@app.post("/api/rollouts/{namespace}/{name}/promote-full")
async def promote_full(namespace: str, name: str):
    rollout = _get_rollout(namespace, name)
    spec_patch, status_patch = promote_patches(rollout, full=True)
    return _apply(namespace, name, "promote-full", spec_patch, status_patch)


@app.post("/api/rollouts/{namespace}/{name}/abort")
async def abort(namespace: str, name: str):
    _get_rollout(namespace, name)
    return _apply(namespace, name, "abort", None, {"status": {"abort": True}})


@app.post("/api/rollouts/{namespace}/{name}/retry")
async def retry(namespace: str, name: str):
    _get_rollout(namespace, name)
    return _apply(namespace, name, "retry", None, {"status": {"abort": False}})


@app.post("/api/rollouts/{namespace}/{name}/pause")
async def pause(namespace: str, name: str):
    _get_rollout(namespace, name)
    return _apply(namespace, name, "pause", {"spec": {"paused": True}}, None)


@app.post("/api/rollouts/{namespace}/{name}/resume")
async def resume(namespace: str, name: str):
    _get_rollout(namespace, name)
    return _apply(namespace, name, "resume", {"spec": {"paused": False}}, None)


@app.post("/api/rollouts/{namespace}/{name}/restart")
async def restart(namespace: str, name: str):
    _get_rollout(namespace, name)
    restart_at = timeutil.format_time(timeutil.now())
    return _apply(namespace, name, "restart", {"spec": {"restartAt": restart_at}}, None)
