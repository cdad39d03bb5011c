"""One reconciliation pass over a single StackSet.

The pass reads everything it needs first, then runs the stages in order on
immutable snapshots (traffic -> prescaling -> replicas -> garbage collection)
and only then writes. `now` is taken once at the start of the pass.

Failed writes are collected and logged; the next pass recomputes everything
from fresh reads, so nothing has to be rolled back.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from kubernetes.client.exceptions import ApiException

from stackset_controller.arbiter import ReplicaArbiter
from stackset_controller.config import ControllerConfig
from stackset_controller.errors import (
    DeletionConflictError,
    InconsistentStateError,
    MisconfigurationError,
    StackSetError,
    TransientWriteError,
)
from stackset_controller.logger import ControllerLogger
from stackset_controller.model import (
    EffectiveReplicaTarget,
    PrescalingRecord,
    Stack,
    StackSet,
    StackSetSnapshot,
    WriteTarget,
    parse_autoscaler,
    parse_traffic,
    stack_from_resource,
    stack_name,
    stackset_from_resource,
)
from stackset_controller.prescaling import PrescalingEngine, PrescalingState
from stackset_controller.stack_gc import StackGarbageCollector
from stackset_controller.traffic import TrafficDecision, TrafficReconciler

logger = ControllerLogger("reconcile").logger

MISCONFIGURED_CONDITION = "Misconfigured"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PassResult:
    stackset: str
    now: datetime
    skipped: str | None = None
    decision: TrafficDecision | None = None
    state: PrescalingState | None = None
    targets: dict[str, EffectiveReplicaTarget] = field(default_factory=dict)
    deleted: list[str] = field(default_factory=list)
    errors: list[StackSetError] = field(default_factory=list)


def misconfigured_condition(message: str | None, now: datetime) -> dict[str, Any]:
    return {
        "type": MISCONFIGURED_CONDITION,
        "status": "True" if message else "False",
        "reason": "InvalidSpec" if message else "SpecValid",
        "message": message or "",
        "lastTransitionTime": now.strftime("%Y-%m-%dT%H:%M:%SZ"),
    }


def _condition_changed(obj: Mapping[str, Any], condition: dict[str, Any]) -> bool:
    for c in (obj.get("status") or {}).get("conditions") or []:
        if c.get("type") == condition["type"]:
            return c.get("status") != condition["status"] or c.get("message") != condition["message"]
    return condition["status"] == "True"


def status_replicas(stack: Stack, target: EffectiveReplicaTarget) -> int:
    """Replicas reported on the Stack status.

    For HPA-bound stacks the target is only the HPA floor; what runs is whatever
    the HPA last scaled to.
    """
    if target.write == WriteTarget.AUTOSCALER_MIN_REPLICAS and stack.current_replicas is not None:
        return stack.current_replicas
    return target.replicas


class StackSetReconciler:
    def __init__(
        self,
        store,
        traffic_backend,
        compute,
        autoscaler,
        cfg: ControllerConfig,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.traffic_backend = traffic_backend
        self.compute = compute
        self.autoscaler = autoscaler
        self.cfg = cfg
        self.clock = clock
        self.traffic = TrafficReconciler(cfg.convergence_tolerance, cfg.weight_sum_tolerance)
        self.prescaling = PrescalingEngine(cfg.negligible_weight)
        self.arbiter = ReplicaArbiter()
        self.gc = StackGarbageCollector(cfg.negligible_weight)

    def reconcile(self, name: str) -> PassResult:
        now = self.clock()
        result = PassResult(stackset=name, now=now)
        obj = None
        try:
            obj = self.store.get_stackset(name)
            if obj is None:
                result.skipped = "StackSet not found"
                return result
            self._reconcile(obj, result)
        except MisconfigurationError as e:
            result.skipped = str(e)
            result.errors.append(e)
            logger.error(f"StackSet {name} is misconfigured: {e}")
            if obj is not None:
                self._set_condition(obj, misconfigured_condition(str(e), now), result)
        except InconsistentStateError as e:
            result.skipped = str(e)
            result.errors.append(e)
            logger.warning(f"Skipping pass for {name}: {e}")
        except ApiException as e:
            result.skipped = f"read failed: {e.reason}"
            logger.warning(f"Skipping pass for {name}, read failed: {e.status} {e.reason}")
        return result

    def _set_condition(self, obj: Mapping[str, Any], condition: dict[str, Any], result: PassResult) -> None:
        if not _condition_changed(obj, condition):
            return
        try:
            self.store.patch_stackset_status(obj["metadata"]["name"], {"conditions": [condition]})
        except TransientWriteError as e:
            result.errors.append(e)
            logger.warning(str(e))

    def ensure_resources(self, obj: Mapping[str, Any], stackset: StackSet, result: PassResult) -> list[dict[str, Any]]:
        """Create the Stack of the declared version and the workloads of every Stack."""
        stack_objs = list(self.store.list_stacks(stackset.name))
        names = {s["metadata"]["name"] for s in stack_objs}
        if stackset.version and stack_name(stackset.name, stackset.version) not in names:
            try:
                stack_objs.append(self.store.create_stack(obj, stackset.version))
            except TransientWriteError as e:
                result.errors.append(e)
                logger.warning(str(e))

        for stack_obj in stack_objs:
            where = f"Stack {stack_obj['metadata']['name']}"
            bounds = parse_autoscaler((stack_obj.get("spec") or {}).get("autoscaler"), f"{where}.spec.autoscaler")
            try:
                self.compute.ensure(stack_obj)
                if bounds is not None:
                    self.autoscaler.ensure(stack_obj, bounds)
            except TransientWriteError as e:
                result.errors.append(e)
                logger.warning(str(e))
        return stack_objs

    def read_snapshot(self, stackset: StackSet, stack_objs: list[dict[str, Any]], now: datetime) -> StackSetSnapshot:
        stacks = []
        for stack_obj in stack_objs:
            stack = stack_from_resource(stack_obj, stackset.name, now)
            current = None
            if stack.autoscaler is not None:
                reading = self.autoscaler.read(stack.name)
                if reading is not None:
                    current = reading.current_replicas
            if current is None:
                current = self.compute.current_replicas(stack.name)
            stacks.append(replace(stack, current_replicas=current))
        return StackSetSnapshot(stackset=stackset, stacks=tuple(stacks), now=now)

    def _reconcile(self, obj: Mapping[str, Any], result: PassResult) -> None:
        now = result.now
        stackset = stackset_from_resource(obj, self.cfg.default_prescaling_timeout)
        stack_objs = self.ensure_resources(obj, stackset, result)
        snapshot = self.read_snapshot(stackset, stack_objs, now)
        actual = self.traffic_backend.read_actual(stackset.name)

        decision = self.traffic.reconcile(snapshot, actual)
        result.decision = decision
        state = self.prescaling.apply(decision.snapshot, decision.increases)
        result.state = state
        targets = self.arbiter.arbitrate(decision.snapshot, state)
        result.targets = targets
        doomed = self.gc.collect(decision.snapshot, state)

        # capacity first, then traffic
        for target in targets.values():
            if target.stack not in doomed:
                self._write_target(target, result)
        self._write_traffic(decision, result)
        for stack in decision.snapshot.stacks:
            if stack.name in doomed:
                continue
            target = targets[stack.name]
            status = {
                "desiredTrafficWeight": stack.desired_weight,
                "actualTrafficWeight": stack.actual_weight,
                "replicas": status_replicas(stack, target),
                "targetReplicas": target.replicas,
                "targetMode": target.mode.value,
                "prescaling": self._prescaling_status(state.record(stack.name), now),
            }
            self._write(lambda: self.store.patch_stack_status(stack.name, status), result)
        for name in doomed:
            self._delete(stackset, name, now, result)

        self._write_stackset_status(obj, decision, doomed, now, result)
        logger.debug(
            f"Pass for {stackset.name} done: targets="
            f"{ {n: (t.mode.value, t.replicas) for n, t in targets.items()} } deleted={result.deleted}"
        )

    def _prescaling_status(self, record: PrescalingRecord | None, now: datetime) -> dict[str, Any] | None:
        if record is None:
            return None
        return record.to_status(now)

    def _write(self, fn: Callable[[], Any], result: PassResult) -> None:
        try:
            fn()
        except TransientWriteError as e:
            result.errors.append(e)
            logger.warning(f"{result.stackset}: {e}, will retry next pass")

    def _write_target(self, target: EffectiveReplicaTarget, result: PassResult) -> None:
        if target.write == WriteTarget.AUTOSCALER_MIN_REPLICAS:
            self._write(lambda: self.autoscaler.set_min_replicas(target.stack, target.replicas), result)
        else:
            self._write(lambda: self.compute.set_replicas(target.stack, target.replicas), result)

    def _write_traffic(self, decision: TrafficDecision, result: PassResult) -> None:
        name = decision.snapshot.stackset.name
        if decision.defaulted:
            self._write(lambda: self.store.patch_stackset_traffic(name, decision.desired), result)
        self._write(lambda: self.traffic_backend.write_desired(name, decision.desired), result)

    def verify_deletion(self, stackset: StackSet, name: str, now: datetime) -> None:
        """Re-read the Stack and the StackSet traffic right before deleting."""
        fresh_stackset = self.store.get_stackset(stackset.name)
        desired = parse_traffic(((fresh_stackset or {}).get("spec") or {}).get("traffic"))
        if desired.get(name) > self.cfg.negligible_weight:
            raise DeletionConflictError(f"{name} regained desired traffic", stackset.name, name)
        fresh = self.store.get_stack(name)
        if fresh is None:
            return
        record = PrescalingRecord.from_status((fresh.get("status") or {}).get("prescaling"))
        if record is not None and record.is_active(now):
            raise DeletionConflictError(f"{name} entered a prescaling window", stackset.name, name)

    def _delete(self, stackset: StackSet, name: str, now: datetime, result: PassResult) -> None:
        try:
            self.verify_deletion(stackset, name, now)
            self.store.delete_stack(name)
        except DeletionConflictError as e:
            logger.info(f"Not deleting {name}: {e}")
            return
        except TransientWriteError as e:
            result.errors.append(e)
            logger.warning(f"{result.stackset}: {e}, will retry next pass")
            return
        except ApiException as e:
            logger.warning(f"Not deleting {name}, re-check failed: {e.status} {e.reason}")
            return
        result.deleted.append(name)
        logger.info(f"Garbage collected Stack {name} of {stackset.name}")

    def _write_stackset_status(
        self,
        obj: Mapping[str, Any],
        decision: TrafficDecision,
        doomed: tuple[str, ...],
        now: datetime,
        result: PassResult,
    ) -> None:
        current = obj.get("status") or {}
        status = {
            "observedStacks": len(decision.snapshot.stacks) - len(result.deleted),
            "traffic": [{"stackName": s, "weight": w} for s, w in decision.actual if s not in doomed],
        }
        condition = misconfigured_condition(None, now)
        if _condition_changed(obj, condition):
            status["conditions"] = [condition]
        elif all(current.get(k) == v for k, v in status.items()):
            return
        self._write(lambda: self.store.patch_stackset_status(decision.snapshot.stackset.name, status), result)


__all__ = ["PassResult", "StackSetReconciler", "utcnow"]
