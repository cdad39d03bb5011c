"""Data model shared by the reconciliation stages.

All types are immutable snapshots. A pass builds them from the custom resources
once, then hands them from stage to stage; nothing here talks to the cluster.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable, Iterator, Mapping

from stackset_controller.config import (
    PRESCALE_ANNOTATION,
    PRESCALE_TIMEOUT_ANNOTATION,
    VERSION_LABEL,
    parse_duration,
)
from stackset_controller.errors import MisconfigurationError

DEFAULT_RETENTION_COUNT = 10


class TargetMode(str, Enum):
    STATIC = "Static"
    PRESCALED = "Prescaled"
    AUTOSCALED = "Autoscaled"


class WriteTarget(str, Enum):
    DEPLOYMENT_REPLICAS = "deployment_replicas"
    AUTOSCALER_MIN_REPLICAS = "autoscaler_min_replicas"


@dataclass(frozen=True)
class TrafficWeights:
    """Stack name -> percentage of traffic, in [0, 100]."""

    entries: tuple[tuple[str, float], ...] = ()

    @staticmethod
    def from_mapping(weights: Mapping[str, float] | None) -> "TrafficWeights":
        if not weights:
            return TrafficWeights()
        return TrafficWeights(tuple(sorted((str(k), float(v)) for k, v in weights.items())))

    def get(self, stack_name: str) -> float:
        for name, weight in self.entries:
            if name == stack_name:
                return weight
        return 0.0

    def total(self) -> float:
        return sum(w for _, w in self.entries)

    def as_dict(self) -> dict[str, float]:
        return dict(self.entries)

    def names(self) -> set[str]:
        return {name for name, _ in self.entries}

    def __iter__(self) -> Iterator[tuple[str, float]]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)


@dataclass(frozen=True)
class TrafficWeightStore:
    """Desired and observed weights of one StackSet."""

    desired: TrafficWeights = field(default_factory=TrafficWeights)
    actual: TrafficWeights = field(default_factory=TrafficWeights)


@dataclass(frozen=True)
class AutoscalerBounds:
    min_replicas: int
    max_replicas: int

    def clamp(self, replicas: int) -> int:
        return max(self.min_replicas, min(self.max_replicas, replicas))


@dataclass(frozen=True)
class RetentionPolicy:
    retention_count: int = DEFAULT_RETENTION_COUNT
    min_age: timedelta = timedelta(0)


@dataclass(frozen=True)
class PrescalingConfig:
    enabled: bool = False
    timeout: timedelta = timedelta(minutes=5)


@dataclass(frozen=True)
class PrescalingRecord:
    floor: int
    window_start: datetime
    window_end: datetime
    previous_weight: float
    trigger_weight: float

    def is_active(self, now: datetime) -> bool:
        return now < self.window_end

    def to_status(self, now: datetime) -> dict[str, Any]:
        return {
            "active": self.is_active(now),
            "replicas": self.floor,
            "desiredTrafficWeight": self.trigger_weight,
            "previousTrafficWeight": self.previous_weight,
            "lastTrafficIncrease": format_time(self.window_start),
            "windowEnd": format_time(self.window_end),
        }

    @staticmethod
    def from_status(status: Mapping[str, Any] | None) -> "PrescalingRecord | None":
        if not status or "lastTrafficIncrease" not in status or "windowEnd" not in status:
            return None
        try:
            return PrescalingRecord(
                floor=int(status.get("replicas", 0)),
                window_start=parse_time(status["lastTrafficIncrease"]),
                window_end=parse_time(status["windowEnd"]),
                previous_weight=float(status.get("previousTrafficWeight", 0.0)),
                trigger_weight=float(status.get("desiredTrafficWeight", 0.0)),
            )
        except (TypeError, ValueError):
            return None


@dataclass(frozen=True)
class Stack:
    stackset: str
    version: str
    replicas: int
    created: datetime
    autoscaler: AutoscalerBounds | None = None
    desired_weight: float = 0.0
    actual_weight: float = 0.0
    previous_weight: float = 0.0
    current_replicas: int | None = None
    prescaling: PrescalingRecord | None = None
    mode: TargetMode | None = None
    uid: str | None = None

    @property
    def name(self) -> str:
        return stack_name(self.stackset, self.version)

    @property
    def incoming_weight(self) -> float:
        return max(self.desired_weight, self.actual_weight)

    @property
    def effective_replicas(self) -> int:
        if self.current_replicas is not None:
            return self.current_replicas
        return self.replicas


@dataclass(frozen=True)
class StackSet:
    name: str
    namespace: str
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    prescaling: PrescalingConfig = field(default_factory=PrescalingConfig)
    desired_traffic: TrafficWeights = field(default_factory=TrafficWeights)
    version: str | None = None
    stack_template: Mapping[str, Any] = field(default_factory=dict, hash=False, compare=False)
    uid: str | None = None


@dataclass(frozen=True)
class StackSetSnapshot:
    """Everything one pass knows about a StackSet, captured at `now`."""

    stackset: StackSet
    stacks: tuple[Stack, ...]
    now: datetime

    def stack(self, name: str) -> Stack | None:
        for s in self.stacks:
            if s.name == name:
                return s
        return None

    def names(self) -> set[str]:
        return {s.name for s in self.stacks}

    def by_creation(self) -> list[Stack]:
        return sorted(self.stacks, key=lambda s: (s.created, s.name))


@dataclass(frozen=True)
class EffectiveReplicaTarget:
    stack: str
    mode: TargetMode
    replicas: int
    write: WriteTarget


def stack_name(stackset: str, version: str) -> str:
    return f"{stackset}-{version}"


def parse_time(value: str | datetime) -> datetime:
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def format_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_mode(value: Any) -> TargetMode | None:
    try:
        return TargetMode(value)
    except ValueError:
        return None


def _int_field(raw: Mapping[str, Any], key: str, default: int | None, where: str) -> int | None:
    value = raw.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise MisconfigurationError(f"{where}.{key} must be a non-negative integer, got {value!r}")
    return value


def parse_autoscaler(raw: Mapping[str, Any] | None, where: str) -> AutoscalerBounds | None:
    if not raw:
        return None
    min_replicas = _int_field(raw, "minReplicas", 1, where)
    max_replicas = _int_field(raw, "maxReplicas", None, where)
    if max_replicas is None:
        raise MisconfigurationError(f"{where}.maxReplicas is required")
    if min_replicas > max_replicas:
        raise MisconfigurationError(f"{where}: minReplicas {min_replicas} exceeds maxReplicas {max_replicas}")
    return AutoscalerBounds(min_replicas=min_replicas, max_replicas=max_replicas)


def parse_traffic(raw: Iterable[Mapping[str, Any]] | None) -> TrafficWeights:
    weights: dict[str, float] = {}
    for entry in raw or []:
        name = entry.get("stackName")
        if not name:
            continue
        try:
            weights[name] = float(entry.get("weight", 0))
        except (TypeError, ValueError):
            raise MisconfigurationError(f"traffic weight for {name} is not a number: {entry.get('weight')!r}")
    return TrafficWeights.from_mapping(weights)


def stackset_from_resource(obj: Mapping[str, Any], default_timeout: timedelta) -> StackSet:
    meta = obj.get("metadata", {})
    spec = obj.get("spec", {}) or {}
    name = meta.get("name")
    if not name:
        raise MisconfigurationError("StackSet without metadata.name")
    where = f"StackSet {name}"

    lifecycle = spec.get("stackLifecycle", {}) or {}
    retention_count = _int_field(lifecycle, "limit", DEFAULT_RETENTION_COUNT, f"{where}.stackLifecycle")
    min_age = _int_field(lifecycle, "minAgeSeconds", 0, f"{where}.stackLifecycle")

    annotations = meta.get("annotations") or {}
    enabled = bool(annotations.get(PRESCALE_ANNOTATION))
    timeout = default_timeout
    if annotations.get(PRESCALE_TIMEOUT_ANNOTATION):
        timeout = parse_duration(annotations[PRESCALE_TIMEOUT_ANNOTATION])

    template = spec.get("stackTemplate", {}) or {}
    version = (template.get("spec") or {}).get("version")

    return StackSet(
        name=name,
        namespace=meta.get("namespace", "default"),
        retention=RetentionPolicy(retention_count=retention_count, min_age=timedelta(seconds=min_age)),
        prescaling=PrescalingConfig(enabled=enabled, timeout=timeout),
        desired_traffic=parse_traffic(spec.get("traffic")),
        version=str(version) if version is not None else None,
        stack_template=template,
        uid=meta.get("uid"),
    )


def stack_from_resource(obj: Mapping[str, Any], stackset: str, now: datetime) -> Stack:
    """Build a Stack from its custom resource; `now` stands in for a missing creationTimestamp."""
    meta = obj.get("metadata", {})
    spec = obj.get("spec", {}) or {}
    status = obj.get("status", {}) or {}
    name = meta.get("name", "")
    labels = meta.get("labels") or {}
    prefix = f"{stackset}-"
    version = labels.get(VERSION_LABEL) or (name[len(prefix):] if name.startswith(prefix) else name)
    where = f"Stack {name}"

    created = meta.get("creationTimestamp")
    return Stack(
        stackset=stackset,
        version=version,
        replicas=_int_field(spec, "replicas", 1, where),
        created=parse_time(created) if created else now,
        autoscaler=parse_autoscaler(spec.get("autoscaler"), f"{where}.spec.autoscaler"),
        previous_weight=max(
            float(status.get("desiredTrafficWeight", 0.0) or 0.0),
            float(status.get("actualTrafficWeight", 0.0) or 0.0),
        ),
        prescaling=PrescalingRecord.from_status(status.get("prescaling")),
        mode=_parse_mode(status.get("targetMode")),
        uid=meta.get("uid"),
    )


__all__ = [
    "AutoscalerBounds",
    "EffectiveReplicaTarget",
    "PrescalingConfig",
    "PrescalingRecord",
    "RetentionPolicy",
    "Stack",
    "StackSet",
    "StackSetSnapshot",
    "TargetMode",
    "TrafficWeightStore",
    "TrafficWeights",
    "WriteTarget",
    "format_time",
    "parse_time",
    "stack_from_resource",
    "stack_name",
    "stackset_from_resource",
]
