"""Kubernetes adapters for the collaborators of the engine.

- StackSetStore: StackSet/Stack custom resources (spec store)
- IngressTrafficBackend: desired/actual weights on the StackSet Ingress
- DeploymentComputeProvider: Deployment replica counts
- HPAAutoscaler: HorizontalPodAutoscaler minReplicas

Reads let `ApiException` through (a 404 reads as "absent"). Writes translate
`ApiException` into `TransientWriteError` so callers can keep going and retry
on the next tick.
"""

import json
from dataclasses import dataclass
from typing import Any, Mapping

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException

from stackset_controller.config import (
    ACTUAL_WEIGHTS_ANNOTATION,
    API_GROUP,
    API_VERSION,
    DESIRED_WEIGHTS_ANNOTATION,
    STACK_PLURAL,
    STACKSET_LABEL,
    STACKSET_PLURAL,
    VERSION_LABEL,
)
from stackset_controller.errors import TransientWriteError
from stackset_controller.logger import ControllerLogger
from stackset_controller.model import AutoscalerBounds, TrafficWeights, stack_name

logger = ControllerLogger("kube").logger

DEFAULT_HPA_METRICS = [
    {
        "type": "Resource",
        "resource": {"name": "cpu", "target": {"type": "Utilization", "averageUtilization": 80}},
    }
]


def load_kube_config(in_cluster: bool = True) -> None:
    if in_cluster:
        try:
            config.load_incluster_config()
            logger.info("Loaded in-cluster config")
            return
        except ConfigException as e:
            logger.warning(f"Failed to load in-cluster config: {e}")
    config.load_kube_config()
    logger.info("Loaded local kubeconfig")


def is_not_found(e: ApiException) -> bool:
    return e.status == 404


def owner_reference(kind: str, name: str, uid: str | None, api_version: str) -> dict[str, Any]:
    return {
        "apiVersion": api_version,
        "kind": kind,
        "name": name,
        "uid": uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }


def stack_labels(stackset: str, version: str) -> dict[str, str]:
    return {STACKSET_LABEL: stackset, VERSION_LABEL: version}


def _annotation_weights(annotations: Mapping[str, str] | None, key: str) -> TrafficWeights:
    raw = (annotations or {}).get(key)
    if not raw:
        return TrafficWeights()
    try:
        return TrafficWeights.from_mapping(json.loads(raw))
    except (json.JSONDecodeError, TypeError, ValueError, AttributeError) as e:
        logger.error(f"Ignoring malformed {key} annotation {raw!r}: {e}")
        return TrafficWeights()


class StackSetStore:
    def __init__(self, custom: client.CustomObjectsApi, namespace: str):
        self.custom = custom
        self.namespace = namespace

    def list_stacksets(self) -> list[dict[str, Any]]:
        res = self.custom.list_namespaced_custom_object(API_GROUP, API_VERSION, self.namespace, STACKSET_PLURAL)
        return res.get("items", [])

    def get_stackset(self, name: str) -> dict[str, Any] | None:
        try:
            return self.custom.get_namespaced_custom_object(
                API_GROUP, API_VERSION, self.namespace, STACKSET_PLURAL, name
            )
        except ApiException as e:
            if is_not_found(e):
                return None
            raise

    def list_stacks(self, stackset: str) -> list[dict[str, Any]]:
        res = self.custom.list_namespaced_custom_object(
            API_GROUP, API_VERSION, self.namespace, STACK_PLURAL,
            label_selector=f"{STACKSET_LABEL}={stackset}",
        )
        return res.get("items", [])

    def get_stack(self, name: str) -> dict[str, Any] | None:
        try:
            return self.custom.get_namespaced_custom_object(
                API_GROUP, API_VERSION, self.namespace, STACK_PLURAL, name
            )
        except ApiException as e:
            if is_not_found(e):
                return None
            raise

    def create_stack(self, stackset: Mapping[str, Any], version: str) -> dict[str, Any]:
        meta = stackset["metadata"]
        template = (stackset.get("spec", {}) or {}).get("stackTemplate", {}) or {}
        template_spec = dict(template.get("spec", {}) or {})
        template_spec.pop("version", None)
        name = stack_name(meta["name"], version)
        body = {
            "apiVersion": f"{API_GROUP}/{API_VERSION}",
            "kind": "Stack",
            "metadata": {
                "name": name,
                "namespace": self.namespace,
                "labels": stack_labels(meta["name"], version),
                "ownerReferences": [
                    owner_reference("StackSet", meta["name"], meta.get("uid"), f"{API_GROUP}/{API_VERSION}")
                ],
            },
            "spec": template_spec,
        }
        try:
            created = self.custom.create_namespaced_custom_object(
                API_GROUP, API_VERSION, self.namespace, STACK_PLURAL, body
            )
        except ApiException as e:
            raise TransientWriteError(f"Failed to create Stack {self.namespace}/{name}: {e.reason}", meta["name"], name)
        logger.info(f"Created Stack {self.namespace}/{name}")
        return created

    def patch_stack_status(self, name: str, status: dict[str, Any]) -> None:
        try:
            self.custom.patch_namespaced_custom_object_status(
                API_GROUP, API_VERSION, self.namespace, STACK_PLURAL, name, {"status": status}
            )
        except ApiException as e:
            raise TransientWriteError(f"Failed to patch status of Stack {self.namespace}/{name}: {e.reason}", target=name)

    def patch_stackset_traffic(self, name: str, weights: TrafficWeights) -> None:
        body = {"spec": {"traffic": [{"stackName": s, "weight": w} for s, w in weights]}}
        try:
            self.custom.patch_namespaced_custom_object(
                API_GROUP, API_VERSION, self.namespace, STACKSET_PLURAL, name, body
            )
        except ApiException as e:
            raise TransientWriteError(f"Failed to patch traffic of StackSet {self.namespace}/{name}: {e.reason}", name, name)

    def patch_stackset_status(self, name: str, status: dict[str, Any]) -> None:
        try:
            self.custom.patch_namespaced_custom_object_status(
                API_GROUP, API_VERSION, self.namespace, STACKSET_PLURAL, name, {"status": status}
            )
        except ApiException as e:
            raise TransientWriteError(f"Failed to patch status of StackSet {self.namespace}/{name}: {e.reason}", name, name)

    def delete_stack(self, name: str) -> None:
        try:
            self.custom.delete_namespaced_custom_object(
                API_GROUP, API_VERSION, self.namespace, STACK_PLURAL, name,
                propagation_policy="Foreground",
            )
        except ApiException as e:
            if is_not_found(e):
                return
            raise TransientWriteError(f"Failed to delete Stack {self.namespace}/{name}: {e.reason}", target=name)
        logger.info(f"Deleted Stack {self.namespace}/{name}")


class IngressTrafficBackend:
    def __init__(self, networking: client.NetworkingV1Api, namespace: str):
        self.networking = networking
        self.namespace = namespace

    def _annotations(self, stackset: str) -> dict[str, str] | None:
        try:
            ingress = self.networking.read_namespaced_ingress(name=stackset, namespace=self.namespace)
        except ApiException as e:
            if is_not_found(e):
                return None
            raise
        return ingress.metadata.annotations or {}

    def read_actual(self, stackset: str) -> TrafficWeights:
        return _annotation_weights(self._annotations(stackset), ACTUAL_WEIGHTS_ANNOTATION)

    def read_desired(self, stackset: str) -> TrafficWeights:
        return _annotation_weights(self._annotations(stackset), DESIRED_WEIGHTS_ANNOTATION)

    def write_desired(self, stackset: str, weights: TrafficWeights) -> bool:
        """Write the desired weights; returns False when the Ingress does not exist yet."""
        annotations = self._annotations(stackset)
        if annotations is None:
            logger.info(f"Ingress {self.namespace}/{stackset} not found, not writing traffic weights")
            return False
        if _annotation_weights(annotations, DESIRED_WEIGHTS_ANNOTATION) == weights:
            return True
        body = {"metadata": {"annotations": {DESIRED_WEIGHTS_ANNOTATION: json.dumps(weights.as_dict(), sort_keys=True)}}}
        try:
            self.networking.patch_namespaced_ingress(name=stackset, namespace=self.namespace, body=body)
        except ApiException as e:
            raise TransientWriteError(f"Failed to patch Ingress {self.namespace}/{stackset}: {e.reason}", stackset, stackset)
        logger.info(f"Wrote desired weights {weights.as_dict()} to Ingress {self.namespace}/{stackset}")
        return True


class DeploymentComputeProvider:
    def __init__(self, apps: client.AppsV1Api, namespace: str):
        self.apps = apps
        self.namespace = namespace

    def read(self, name: str) -> Any | None:
        try:
            return self.apps.read_namespaced_deployment(name=name, namespace=self.namespace)
        except ApiException as e:
            if is_not_found(e):
                return None
            raise

    def current_replicas(self, name: str) -> int | None:
        deployment = self.read(name)
        if deployment is None:
            return None
        return deployment.spec.replicas

    def set_replicas(self, name: str, replicas: int) -> bool:
        """Patch spec.replicas; returns False when nothing had to change."""
        deployment = self.read(name)
        if deployment is None:
            raise TransientWriteError(f"Deployment {self.namespace}/{name} not found", target=name)
        if deployment.spec.replicas == replicas:
            return False
        try:
            self.apps.patch_namespaced_deployment(
                name=name, namespace=self.namespace, body={"spec": {"replicas": replicas}}
            )
        except ApiException as e:
            raise TransientWriteError(f"Failed to patch Deployment {self.namespace}/{name}: {e.reason}", target=name)
        logger.info(f"Scaled Deployment {self.namespace}/{name}: {deployment.spec.replicas} -> {replicas}")
        return True

    def ensure(self, stack: Mapping[str, Any]) -> bool:
        """Create the Deployment of a Stack if it is missing."""
        meta = stack["metadata"]
        name = meta["name"]
        if self.read(name) is not None:
            return False
        spec = stack.get("spec", {}) or {}
        labels = dict(meta.get("labels") or {})
        template = json.loads(json.dumps(spec.get("podTemplate") or {}))
        template.setdefault("metadata", {}).setdefault("labels", {}).update(labels)
        body = {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {
                "name": name,
                "namespace": self.namespace,
                "labels": labels,
                "ownerReferences": [owner_reference("Stack", name, meta.get("uid"), f"{API_GROUP}/{API_VERSION}")],
            },
            "spec": {
                "replicas": spec.get("replicas", 1),
                "selector": {"matchLabels": labels},
                "template": template,
            },
        }
        try:
            self.apps.create_namespaced_deployment(namespace=self.namespace, body=body)
        except ApiException as e:
            raise TransientWriteError(f"Failed to create Deployment {self.namespace}/{name}: {e.reason}", target=name)
        logger.info(f"Created Deployment {self.namespace}/{name}")
        return True


@dataclass(frozen=True)
class AutoscalerReading:
    min_replicas: int | None
    current_replicas: int | None


class HPAAutoscaler:
    def __init__(self, autoscaling: client.AutoscalingV2Api, namespace: str):
        self.autoscaling = autoscaling
        self.namespace = namespace

    def read(self, name: str) -> AutoscalerReading | None:
        try:
            hpa = self.autoscaling.read_namespaced_horizontal_pod_autoscaler(name=name, namespace=self.namespace)
        except ApiException as e:
            if is_not_found(e):
                return None
            raise
        current = hpa.status.current_replicas if hpa.status is not None else None
        return AutoscalerReading(min_replicas=hpa.spec.min_replicas, current_replicas=current)

    def set_min_replicas(self, name: str, min_replicas: int) -> bool:
        """Patch spec.minReplicas; returns False when nothing had to change."""
        reading = self.read(name)
        if reading is None:
            raise TransientWriteError(f"HorizontalPodAutoscaler {self.namespace}/{name} not found", target=name)
        if reading.min_replicas == min_replicas:
            return False
        try:
            self.autoscaling.patch_namespaced_horizontal_pod_autoscaler(
                name=name, namespace=self.namespace, body={"spec": {"minReplicas": min_replicas}}
            )
        except ApiException as e:
            raise TransientWriteError(
                f"Failed to patch HorizontalPodAutoscaler {self.namespace}/{name}: {e.reason}", target=name
            )
        logger.info(f"Set minReplicas of HPA {self.namespace}/{name}: {reading.min_replicas} -> {min_replicas}")
        return True

    def ensure(self, stack: Mapping[str, Any], bounds: AutoscalerBounds) -> bool:
        """Create the HPA of a Stack if it is missing."""
        meta = stack["metadata"]
        name = meta["name"]
        if self.read(name) is not None:
            return False
        autoscaler = (stack.get("spec", {}) or {}).get("autoscaler", {}) or {}
        body = {
            "apiVersion": "autoscaling/v2",
            "kind": "HorizontalPodAutoscaler",
            "metadata": {
                "name": name,
                "namespace": self.namespace,
                "labels": dict(meta.get("labels") or {}),
                "ownerReferences": [owner_reference("Stack", name, meta.get("uid"), f"{API_GROUP}/{API_VERSION}")],
            },
            "spec": {
                "scaleTargetRef": {"apiVersion": "apps/v1", "kind": "Deployment", "name": name},
                "minReplicas": bounds.min_replicas,
                "maxReplicas": bounds.max_replicas,
                "metrics": autoscaler.get("metrics") or DEFAULT_HPA_METRICS,
            },
        }
        try:
            self.autoscaling.create_namespaced_horizontal_pod_autoscaler(namespace=self.namespace, body=body)
        except ApiException as e:
            raise TransientWriteError(
                f"Failed to create HorizontalPodAutoscaler {self.namespace}/{name}: {e.reason}", target=name
            )
        logger.info(f"Created HorizontalPodAutoscaler {self.namespace}/{name}")
        return True


__all__ = [
    "AutoscalerReading",
    "DeploymentComputeProvider",
    "HPAAutoscaler",
    "IngressTrafficBackend",
    "StackSetStore",
    "load_kube_config",
]
