"""Level-triggered control loop.

Every StackSet is enqueued on a fixed interval and additionally whenever one of
its resources changes (StackSet, Stack, Deployment, HPA or Ingress watches).
Worker threads drain the queue; the queue guarantees that one StackSet is never
reconciled by two workers at the same time.
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from kubernetes import client, watch
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from stackset_controller.config import (
    API_GROUP,
    API_VERSION,
    STACK_PLURAL,
    STACKSET_LABEL,
    STACKSET_PLURAL,
    ControllerConfig,
)
from stackset_controller.kube import (
    DeploymentComputeProvider,
    HPAAutoscaler,
    IngressTrafficBackend,
    StackSetStore,
    load_kube_config,
)
from stackset_controller.logger import ControllerLogger
from stackset_controller.reconcile import PassResult, StackSetReconciler
from stackset_controller.workqueue import KeyedWorkQueue

logger = ControllerLogger("controller").logger

WATCH_TIMEOUT_SECONDS = 300
MAX_BACKOFF_SECONDS = 60


def _meta(obj: Any) -> tuple[str | None, dict[str, str]]:
    if isinstance(obj, dict):
        meta = obj.get("metadata") or {}
        return meta.get("name"), meta.get("labels") or {}
    meta = getattr(obj, "metadata", None)
    if meta is None:
        return None, {}
    return meta.name, meta.labels or {}


def stackset_of_named(obj: Any) -> str | None:
    """StackSets and their Ingress share the StackSet's name."""
    name, _ = _meta(obj)
    return name


def stackset_of_labeled(obj: Any) -> str | None:
    """Stacks, Deployments and HPAs carry the StackSet in a label."""
    _, labels = _meta(obj)
    return labels.get(STACKSET_LABEL)


@dataclass(frozen=True)
class WatchSource:
    name: str
    list_fn: Callable[..., Any]
    key_fn: Callable[[Any], str | None]
    args: tuple = ()
    kwargs: dict[str, Any] = field(default_factory=dict, hash=False)


class Controller:
    def __init__(
        self,
        reconciler: StackSetReconciler,
        store: StackSetStore,
        cfg: ControllerConfig,
        sources: list[WatchSource] | None = None,
    ):
        self.reconciler = reconciler
        self.store = store
        self.cfg = cfg
        self.sources = sources or []
        self.queue = KeyedWorkQueue()

    def enqueue_all(self) -> int:
        try:
            stacksets = self.store.list_stacksets()
        except ApiException as e:
            logger.warning(f"Failed to list StackSets: {e.status} {e.reason}")
            return 0
        for obj in stacksets:
            self.queue.add(obj["metadata"]["name"])
        return len(stacksets)

    def process_next(self, timeout: float | None = None) -> PassResult | None:
        key = self.queue.get(timeout=timeout)
        if key is None:
            return None
        try:
            result = self.reconciler.reconcile(key)
        except Exception:
            # one broken StackSet must not take the worker down
            logger.exception(f"Unexpected error reconciling {key}")
            return None
        finally:
            self.queue.done(key)
        if result.skipped:
            logger.info(f"Pass for {key} skipped: {result.skipped}")
        return result

    def run_once(self) -> list[PassResult]:
        """Reconcile every StackSet once, sequentially."""
        results = []
        self.enqueue_all()
        while len(self.queue):
            result = self.process_next(timeout=0)
            if result is not None:
                results.append(result)
        return results

    def _worker(self, stop: threading.Event) -> None:
        while not stop.is_set():
            self.process_next(timeout=1.0)

    def _ticker(self, stop: threading.Event) -> None:
        while not stop.is_set():
            count = self.enqueue_all()
            logger.debug(f"Enqueued {count} StackSets")
            stop.wait(self.cfg.interval_seconds)

    def _watch(self, source: WatchSource, stop: threading.Event) -> None:
        backoff = 1
        while not stop.is_set():
            w = watch.Watch()
            try:
                for event in w.stream(
                    source.list_fn,
                    *source.args,
                    timeout_seconds=WATCH_TIMEOUT_SECONDS,
                    **source.kwargs,
                ):
                    if stop.is_set():
                        w.stop()
                        break
                    key = source.key_fn(event["object"])
                    if key:
                        self.queue.add(key)
                backoff = 1
            except ApiException as e:
                logger.warning(f"{source.name} watch failed: {e.status} {e.reason}, retrying in {backoff}s")
                stop.wait(backoff)
                backoff = min(backoff * 2, MAX_BACKOFF_SECONDS)
            except HTTPError as e:
                logger.warning(f"{source.name} watch connection lost: {e}, retrying in {backoff}s")
                stop.wait(backoff)
                backoff = min(backoff * 2, MAX_BACKOFF_SECONDS)

    def run(self, stop: threading.Event) -> None:
        threads = [threading.Thread(target=self._ticker, args=(stop,), name="ticker", daemon=True)]
        for i in range(self.cfg.workers):
            threads.append(threading.Thread(target=self._worker, args=(stop,), name=f"worker-{i}", daemon=True))
        for source in self.sources:
            threads.append(
                threading.Thread(target=self._watch, args=(source, stop), name=f"watch-{source.name}", daemon=True)
            )
        for t in threads:
            t.start()
        logger.info(
            f"Controller started: namespace={self.cfg.namespace} workers={self.cfg.workers} "
            f"interval={self.cfg.interval_seconds}s watches={[s.name for s in self.sources]}"
        )
        try:
            while not stop.is_set():
                stop.wait(1.0)
        except KeyboardInterrupt:
            logger.info("Interrupted, stopping")
            stop.set()
        finally:
            self.queue.shutdown()
            for t in threads:
                t.join(timeout=5)
            logger.info("Controller stopped")


def build_apis(cfg: ControllerConfig) -> dict[str, Any]:
    load_kube_config(cfg.in_cluster)
    return {
        "custom": client.CustomObjectsApi(),
        "apps": client.AppsV1Api(),
        "autoscaling": client.AutoscalingV2Api(),
        "networking": client.NetworkingV1Api(),
    }


def build_controller(cfg: ControllerConfig, apis: dict[str, Any] | None = None) -> Controller:
    apis = apis or build_apis(cfg)
    ns = cfg.namespace
    store = StackSetStore(apis["custom"], ns)
    reconciler = StackSetReconciler(
        store=store,
        traffic_backend=IngressTrafficBackend(apis["networking"], ns),
        compute=DeploymentComputeProvider(apis["apps"], ns),
        autoscaler=HPAAutoscaler(apis["autoscaling"], ns),
        cfg=cfg,
    )
    selector = {"label_selector": STACKSET_LABEL}
    sources = [
        WatchSource(
            "stacksets",
            apis["custom"].list_namespaced_custom_object,
            stackset_of_named,
            args=(API_GROUP, API_VERSION, ns, STACKSET_PLURAL),
        ),
        WatchSource(
            "stacks",
            apis["custom"].list_namespaced_custom_object,
            stackset_of_labeled,
            args=(API_GROUP, API_VERSION, ns, STACK_PLURAL),
            kwargs=selector,
        ),
        WatchSource(
            "deployments",
            apis["apps"].list_namespaced_deployment,
            stackset_of_labeled,
            args=(ns,),
            kwargs=selector,
        ),
        WatchSource(
            "hpas",
            apis["autoscaling"].list_namespaced_horizontal_pod_autoscaler,
            stackset_of_labeled,
            args=(ns,),
            kwargs=selector,
        ),
        WatchSource(
            "ingresses",
            apis["networking"].list_namespaced_ingress,
            stackset_of_named,
            args=(ns,),
        ),
    ]
    return Controller(reconciler, store, cfg, sources)


__all__ = [
    "Controller",
    "WatchSource",
    "build_controller",
    "stackset_of_labeled",
    "stackset_of_named",
]
