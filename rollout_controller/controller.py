"""
Rollout controller: watches, worker pool and the per-key sync handler.

Rollout, replica set and analysis run watches feed one rate-limited queue of rollout
keys. Workers take keys off the queue and reconcile one rollout at a time; a pass that
raises is retried with back-off and a pass that asks to be woken up is re-added after
the requested delay.
"""
import logging
import threading
from typing import Any, Callable, Dict, Iterator, List, Optional

from kubernetes.client.rest import ApiException

from rollout_controller import defaults
from rollout_controller.config import Settings, settings as default_settings
from rollout_controller.context import RolloutContext
from rollout_controller.events import EventRecorder
from rollout_controller.rollout_types import Rollout
from rollout_controller.workqueue import RateLimitingQueue

logger = logging.getLogger(__name__)

WATCH_TIMEOUT_SECS = 300
WATCH_RETRY_SECS = 5


def owner_rollout_key(obj: Any) -> Optional[str]:
    """
    Key of the rollout controlling a watched object.

    Args:
        obj: Raw custom object dict or a kubernetes client model

    Returns:
        "namespace/name" of the owning rollout, or None when a rollout does not control it
    """
    if isinstance(obj, dict):
        metadata = obj.get("metadata") or {}
        namespace = metadata.get("namespace", "")
        refs = [
            (ref.get("kind"), ref.get("name"), ref.get("controller"))
            for ref in metadata.get("ownerReferences") or []
        ]
    else:
        namespace = obj.metadata.namespace
        refs = [(ref.kind, ref.name, ref.controller) for ref in obj.metadata.owner_references or []]
    for kind, name, controller in refs:
        if kind == defaults.ROLLOUT_KIND and controller:
            return f"{namespace}/{name}"
    return None


class RolloutController:
    """Runs reconciliation passes for every rollout in the watched namespace."""

    def __init__(self, client, settings: Optional[Settings] = None, recorder: Optional[EventRecorder] = None):
        self.client = client
        self.settings = settings or default_settings
        self.recorder = recorder or EventRecorder(client, enabled=self.settings.RECORD_EVENTS)
        self.queue = RateLimitingQueue("rollouts")
        self.cache: Dict[str, Rollout] = {}
        self._cache_lock = threading.Lock()
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self.synced = 0
        self.failed = 0

    # -------------------------------------------------------------------------
    # Cache and enqueueing
    # -------------------------------------------------------------------------
    def enqueue(self, key: str) -> None:
        self.queue.add(key)

    def enqueue_after(self, key: str, seconds: float) -> None:
        self.queue.add_after(key, seconds)

    def get_cached(self, key: str) -> Optional[Rollout]:
        with self._cache_lock:
            return self.cache.get(key)

    def write_back(self, rollout: Rollout) -> None:
        """Keep the cache in step with objects this controller just wrote."""
        with self._cache_lock:
            self.cache[rollout.key] = rollout

    def handle_rollout_event(self, event: Dict[str, Any]) -> None:
        obj = event.get("object")
        if not isinstance(obj, dict):
            return
        rollout = Rollout.from_api(obj)
        if event.get("type") == "DELETED":
            with self._cache_lock:
                self.cache.pop(rollout.key, None)
            self.queue.forget(rollout.key)
            return
        self.write_back(rollout)
        self.enqueue(rollout.key)

    def handle_owned_event(self, event: Dict[str, Any]) -> None:
        obj = event.get("object")
        if obj is None:
            return
        key = owner_rollout_key(obj)
        if key is not None:
            self.enqueue(key)

    def resync(self) -> int:
        """Refresh the cache from a full list and enqueue every rollout."""
        rollouts = self.client.list_rollouts(self.settings.K8S_NAMESPACE)
        with self._cache_lock:
            self.cache = {r.key: r for r in rollouts}
        for rollout in rollouts:
            self.enqueue(rollout.key)
        logger.info(f"🔄 Resynced {len(rollouts)} rollouts")
        return len(rollouts)

    # -------------------------------------------------------------------------
    # Sync handler
    # -------------------------------------------------------------------------
    def sync_handler(self, key: str) -> Optional[float]:
        """
        Reconcile the rollout identified by `key`.

        Args:
            key: "namespace/name"

        Returns:
            Seconds after which to reconcile again, or None

        Raises:
            ApiException: When a Kubernetes call fails
            RolloutError: When the pass cannot complete
        """
        namespace, name = key.split("/", 1)
        try:
            rollout = self.client.get_rollout(namespace, name)
        except ApiException as e:
            if e.status == 404:
                logger.info(f"Rollout {key} has been deleted")
                with self._cache_lock:
                    self.cache.pop(key, None)
                return None
            raise

        if rollout.metadata.deletion_timestamp is not None:
            logger.info(f"No reconciliation as rollout {key} marked for deletion")
            return None

        if rollout.spec.replicas is None:
            logger.info(f"Defaulting .spec.replicas of {key} to {defaults.DEFAULT_REPLICAS}")
            updated = self.client.patch_rollout(namespace, name, {"spec": {"replicas": defaults.DEFAULT_REPLICAS}})
            self.write_back(updated)
            return None

        workload_ref = rollout.spec.workload_ref
        if workload_ref is not None and workload_ref.name:
            rollout = rollout.deep_copy()
            rollout.spec.template = self.client.get_deployment_template(namespace, workload_ref.name)

        ctx = RolloutContext(rollout, self.client, self.recorder, self.settings).load()
        requeue_after = ctx.reconcile()
        if ctx.new_rollout is not None:
            self.write_back(ctx.new_rollout)
        return requeue_after

    def process_next_item(self, timeout: Optional[float] = None) -> bool:
        """
        Take one key off the queue and reconcile it.

        Returns:
            False when nothing was processed (timeout or shutdown)
        """
        key = self.queue.get(timeout)
        if key is None:
            return False
        try:
            requeue_after = self.sync_handler(key)
        except Exception as e:
            self.failed += 1
            logger.error(f"❌ Error syncing rollout '{key}': {e}")
            self.queue.add_rate_limited(key)
        else:
            self.synced += 1
            self.queue.forget(key)
            if requeue_after is not None:
                self.queue.add_after(key, requeue_after)
        finally:
            self.queue.done(key)
        return True

    # -------------------------------------------------------------------------
    # Loops
    # -------------------------------------------------------------------------
    def _run_worker(self) -> None:
        while not self._stop.is_set():
            if not self.process_next_item(timeout=1.0) and self.queue.shutting_down:
                return

    def _run_watch(self, name: str, stream: Callable[..., Iterator[Dict[str, Any]]],
                   handler: Callable[[Dict[str, Any]], None]) -> None:
        while not self._stop.is_set():
            try:
                for event in stream(self.settings.K8S_NAMESPACE, timeout_seconds=WATCH_TIMEOUT_SECS):
                    if self._stop.is_set():
                        return
                    try:
                        handler(event)
                    except ValueError as e:
                        logger.warning(f"⚠️ Skipping malformed {name} watch event: {e}")
            except ApiException as e:
                logger.warning(f"⚠️ {name} watch failed: {e.reason}; restarting in {WATCH_RETRY_SECS}s")
                self._stop.wait(WATCH_RETRY_SECS)
            except Exception as e:
                logger.error(f"❌ {name} watch stream broke: {e}; restarting in {WATCH_RETRY_SECS}s")
                self._stop.wait(WATCH_RETRY_SECS)

    def _run_resync(self) -> None:
        while not self._stop.wait(self.settings.RESYNC_PERIOD_SECS):
            try:
                self.resync()
            except ApiException as e:
                logger.warning(f"⚠️ Resync failed: {e.reason}")

    def _spawn(self, name: str, target: Callable, *args) -> None:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def start(self) -> None:
        """List all rollouts once, then start watches, the resync loop and the workers."""
        logger.info(f"🚀 Starting rollout controller with {self.settings.WORKERS} workers")
        self.resync()
        self._spawn("watch-rollouts", self._run_watch, "Rollout", self.client.watch_rollouts, self.handle_rollout_event)
        self._spawn(
            "watch-replicasets", self._run_watch, "ReplicaSet", self.client.watch_replica_sets, self.handle_owned_event
        )
        self._spawn(
            "watch-analysisruns", self._run_watch, "AnalysisRun", self.client.watch_analysis_runs,
            self.handle_owned_event,
        )
        self._spawn("resync", self._run_resync)
        for i in range(self.settings.WORKERS):
            self._spawn(f"worker-{i}", self._run_worker)

    def stop(self, timeout: float = 5.0) -> None:
        logger.info("Stopping rollout controller")
        self._stop.set()
        self.queue.shut_down()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []

    def status(self) -> Dict[str, Any]:
        with self._cache_lock:
            rollouts = len(self.cache)
        return {
            "running": bool(self._threads) and not self._stop.is_set(),
            "workers": self.settings.WORKERS,
            "rollouts": rollouts,
            "synced": self.synced,
            "failed": self.failed,
            "queue": self.queue.stats(),
        }
