import copy
from datetime import datetime, timedelta, timezone

import pytest

from stackset_controller.config import (
    PRESCALE_ANNOTATION,
    PRESCALE_TIMEOUT_ANNOTATION,
    ControllerConfig,
)
from stackset_controller.errors import TransientWriteError
from stackset_controller.kube import AutoscalerReading, stack_labels
from stackset_controller.model import TrafficWeights, format_time, stack_name
from stackset_controller.reconcile import StackSetReconciler

T0 = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


class SteppedClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def stackset_resource(name="app", traffic=None, prescale=True, timeout="5m", limit=10, min_age=0, version=None):
    annotations = {}
    if prescale:
        annotations[PRESCALE_ANNOTATION] = "true"
    if timeout is not None:
        annotations[PRESCALE_TIMEOUT_ANNOTATION] = timeout
    template = {"spec": {"replicas": 1}}
    if version is not None:
        template["spec"]["version"] = version
    return {
        "metadata": {"name": name, "namespace": "default", "uid": f"uid-{name}", "annotations": annotations},
        "spec": {
            "stackLifecycle": {"limit": limit, "minAgeSeconds": min_age},
            "stackTemplate": template,
            "traffic": [{"stackName": s, "weight": w} for s, w in (traffic or {}).items()],
        },
    }


def stack_resource(stackset, version, created, replicas=1, autoscaler=None, weight=None):
    name = stack_name(stackset, version)
    spec = {"replicas": replicas}
    if autoscaler is not None:
        spec["autoscaler"] = {"minReplicas": autoscaler[0], "maxReplicas": autoscaler[1]}
    obj = {
        "metadata": {
            "name": name,
            "namespace": "default",
            "uid": f"uid-{name}",
            "labels": stack_labels(stackset, version),
            "creationTimestamp": format_time(created),
        },
        "spec": spec,
    }
    if weight is not None:
        obj["status"] = {"desiredTrafficWeight": weight, "actualTrafficWeight": weight}
    return obj


class FakeStore:
    """In-memory StackSet/Stack store; returns copies like the API server does."""

    def __init__(self, clock: SteppedClock):
        self.clock = clock
        self.stacksets: dict[str, dict] = {}
        self.stacks: dict[str, dict] = {}
        self.deleted: list[str] = []

    def add_stackset(self, obj):
        self.stacksets[obj["metadata"]["name"]] = obj

    def add_stack(self, obj):
        self.stacks[obj["metadata"]["name"]] = obj

    def set_traffic(self, stackset, weights):
        self.stacksets[stackset]["spec"]["traffic"] = [{"stackName": s, "weight": w} for s, w in weights.items()]

    def traffic(self, stackset):
        return {t["stackName"]: t["weight"] for t in self.stacksets[stackset]["spec"].get("traffic") or []}

    def list_stacksets(self):
        return [copy.deepcopy(o) for o in self.stacksets.values()]

    def get_stackset(self, name):
        return copy.deepcopy(self.stacksets.get(name))

    def list_stacks(self, stackset):
        return [copy.deepcopy(o) for o in self.stacks.values() if o["metadata"]["labels"]["stackset"] == stackset]

    def get_stack(self, name):
        return copy.deepcopy(self.stacks.get(name))

    def create_stack(self, stackset, version):
        spec = dict(stackset["spec"]["stackTemplate"]["spec"])
        spec.pop("version", None)
        obj = stack_resource(stackset["metadata"]["name"], version, self.clock.now, replicas=spec.get("replicas", 1))
        self.add_stack(obj)
        return copy.deepcopy(obj)

    def patch_stack_status(self, name, status):
        self.stacks[name].setdefault("status", {}).update(copy.deepcopy(status))

    def patch_stackset_traffic(self, name, weights: TrafficWeights):
        self.set_traffic(name, weights.as_dict())

    def patch_stackset_status(self, name, status):
        self.stacksets[name].setdefault("status", {}).update(copy.deepcopy(status))

    def delete_stack(self, name):
        self.stacks.pop(name, None)
        self.deleted.append(name)


class FakeTrafficBackend:
    def __init__(self):
        self.actual: dict[str, dict[str, float]] = {}
        self.desired: dict[str, dict[str, float]] = {}

    def read_actual(self, stackset):
        return TrafficWeights.from_mapping(self.actual.get(stackset))

    def read_desired(self, stackset):
        return TrafficWeights.from_mapping(self.desired.get(stackset))

    def write_desired(self, stackset, weights):
        self.desired[stackset] = weights.as_dict()
        return True

    def converge(self, stackset):
        self.actual[stackset] = dict(self.desired.get(stackset, {}))


class FakeCompute:
    def __init__(self):
        self.replicas: dict[str, int] = {}
        self.writes: list[tuple[str, int]] = []
        self.failing: set[str] = set()

    def ensure(self, stack):
        name = stack["metadata"]["name"]
        if name in self.replicas:
            return False
        self.replicas[name] = stack["spec"].get("replicas", 1)
        return True

    def current_replicas(self, name):
        return self.replicas.get(name)

    def set_replicas(self, name, replicas):
        if name in self.failing:
            raise TransientWriteError(f"Failed to patch Deployment default/{name}: Conflict", target=name)
        self.writes.append((name, replicas))
        changed = self.replicas.get(name) != replicas
        self.replicas[name] = replicas
        return changed


class FakeAutoscaler:
    """HPA stand-in: raising minReplicas drags the current replicas along."""

    def __init__(self):
        self.hpas: dict[str, dict[str, int]] = {}

    def ensure(self, stack, bounds):
        name = stack["metadata"]["name"]
        if name in self.hpas:
            return False
        self.hpas[name] = {"min": bounds.min_replicas, "max": bounds.max_replicas, "current": bounds.min_replicas}
        return True

    def read(self, name):
        hpa = self.hpas.get(name)
        if hpa is None:
            return None
        return AutoscalerReading(min_replicas=hpa["min"], current_replicas=hpa["current"])

    def set_min_replicas(self, name, min_replicas):
        hpa = self.hpas[name]
        changed = hpa["min"] != min_replicas
        hpa["min"] = min_replicas
        hpa["current"] = max(hpa["current"], min_replicas)
        return changed


class Cluster:
    def __init__(self, cfg: ControllerConfig | None = None):
        self.clock = SteppedClock()
        self.store = FakeStore(self.clock)
        self.traffic = FakeTrafficBackend()
        self.compute = FakeCompute()
        self.autoscaler = FakeAutoscaler()
        self.reconciler = StackSetReconciler(
            store=self.store,
            traffic_backend=self.traffic,
            compute=self.compute,
            autoscaler=self.autoscaler,
            cfg=cfg or ControllerConfig(),
            clock=self.clock,
        )

    def observe(self, stackset, weights):
        self.traffic.actual[stackset] = dict(weights)

    def reconcile(self, name="app"):
        return self.reconciler.reconcile(name)


@pytest.fixture
def cluster():
    return Cluster()
