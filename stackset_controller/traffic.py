"""Traffic reconciliation.

Desired weights are handed to the traffic layer as they are; the traffic layer
converges on its own. What this module adds is the bookkeeping around it:
validating weight mappings, deciding which stacks gained incoming traffic since
the previous pass and polling for convergence.
"""

import time
from dataclasses import dataclass, replace
from typing import Callable, Mapping

from stackset_controller.errors import ConvergenceTimeoutError, InconsistentStateError
from stackset_controller.logger import ControllerLogger
from stackset_controller.model import StackSetSnapshot, TrafficWeights, TrafficWeightStore

logger = ControllerLogger("traffic").logger


@dataclass(frozen=True)
class WeightIncrease:
    stack: str
    previous_weight: float
    new_weight: float


@dataclass(frozen=True)
class TrafficDecision:
    snapshot: StackSetSnapshot
    weights: TrafficWeightStore
    increases: tuple[WeightIncrease, ...]
    converged: bool
    defaulted: bool = False

    @property
    def desired(self) -> TrafficWeights:
        return self.weights.desired

    @property
    def actual(self) -> TrafficWeights:
        return self.weights.actual


def validate_weights(
    weights: TrafficWeights,
    tolerance: float = 0.01,
    stackset: str | None = None,
    kind: str = "desired",
) -> None:
    """Raise InconsistentStateError unless weights are in range and sum to 100 or 0."""
    for name, weight in weights:
        if weight < 0 or weight > 100:
            raise InconsistentStateError(
                f"{kind} weight {weight} for {name} is outside [0, 100]", stackset
            )
    total = weights.total()
    if abs(total) > tolerance and abs(total - 100.0) > tolerance:
        raise InconsistentStateError(
            f"{kind} weights of {stackset} sum to {total:.3f}, expected 100 or 0", stackset
        )


def weights_converged(
    expected: TrafficWeights | Mapping[str, float],
    observed: TrafficWeights | Mapping[str, float],
    tolerance: float = 0.5,
) -> bool:
    if not isinstance(expected, TrafficWeights):
        expected = TrafficWeights.from_mapping(expected)
    if not isinstance(observed, TrafficWeights):
        observed = TrafficWeights.from_mapping(observed)
    for name in expected.names() | observed.names():
        if abs(expected.get(name) - observed.get(name)) > tolerance:
            return False
    return True


def default_traffic(snapshot: StackSetSnapshot) -> TrafficWeights:
    """Give all traffic to the newest stack."""
    stacks = snapshot.by_creation()
    if not stacks:
        return TrafficWeights()
    return TrafficWeights.from_mapping({stacks[-1].name: 100.0})


def set_desired_weights(
    stack_names: set[str] | list[str],
    requested: Mapping[str, float],
    tolerance: float = 0.01,
    stackset: str | None = None,
) -> TrafficWeights:
    """Build a complete desired mapping from an operator request.

    Stacks missing from `requested` get 0. The result always sums to 100.
    """
    known = set(stack_names)
    unknown = set(requested) - known
    if unknown:
        raise InconsistentStateError(f"unknown stacks in traffic request: {sorted(unknown)}", stackset)

    weights = TrafficWeights.from_mapping({name: float(requested.get(name, 0.0)) for name in known})
    validate_weights(weights, tolerance, stackset)
    if abs(weights.total() - 100.0) > tolerance:
        raise InconsistentStateError(
            f"traffic request for {stackset} sums to {weights.total():.3f}, expected 100", stackset
        )
    return weights


class TrafficReconciler:
    def __init__(
        self,
        convergence_tolerance: float = 0.5,
        weight_sum_tolerance: float = 0.01,
    ):
        self.convergence_tolerance = convergence_tolerance
        self.weight_sum_tolerance = weight_sum_tolerance

    def reconcile(self, snapshot: StackSetSnapshot, actual: TrafficWeights) -> TrafficDecision:
        name = snapshot.stackset.name
        desired = snapshot.stackset.desired_traffic
        defaulted = False
        if desired.total() == 0 and snapshot.stacks:
            desired = default_traffic(snapshot)
            defaulted = True
            logger.info(f"{name}: no traffic configured, defaulting to {desired.as_dict()}")

        known = snapshot.names()
        unknown = desired.names() - known
        if unknown:
            raise InconsistentStateError(f"desired traffic references unknown stacks {sorted(unknown)}", name)
        validate_weights(desired, self.weight_sum_tolerance, name, "desired")
        validate_weights(actual, self.weight_sum_tolerance, name, "actual")

        stacks = []
        increases = []
        for stack in snapshot.stacks:
            updated = replace(
                stack,
                desired_weight=desired.get(stack.name),
                actual_weight=actual.get(stack.name),
            )
            if updated.incoming_weight > stack.previous_weight:
                increases.append(
                    WeightIncrease(
                        stack=stack.name,
                        previous_weight=stack.previous_weight,
                        new_weight=updated.incoming_weight,
                    )
                )
            stacks.append(updated)

        converged = weights_converged(desired, actual, self.convergence_tolerance)
        logger.debug(
            f"{name}: desired={desired.as_dict()} actual={actual.as_dict()} converged={converged}"
        )
        return TrafficDecision(
            snapshot=replace(snapshot, stacks=tuple(stacks)),
            weights=TrafficWeightStore(desired=desired, actual=actual),
            increases=tuple(increases),
            converged=converged,
            defaulted=defaulted,
        )


def await_traffic_weights(
    read: Callable[[], Mapping[str, float]],
    expected: Mapping[str, float],
    timeout: float,
    poll_interval: float = 5.0,
    tolerance: float = 0.5,
    stackset: str | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, float]:
    """Poll `read` until it matches `expected`, else raise ConvergenceTimeoutError."""
    deadline = clock() + timeout
    last_seen: dict[str, float] = {}
    while True:
        last_seen = dict(read())
        if weights_converged(expected, last_seen, tolerance):
            return last_seen
        remaining = deadline - clock()
        if remaining <= 0:
            raise ConvergenceTimeoutError(
                f"traffic weights of {stackset} did not converge within {timeout}s: "
                f"expected {dict(expected)}, last seen {last_seen}",
                stackset,
                expected=dict(expected),
                last_seen=last_seen,
            )
        logger.debug(f"waiting for {stackset} weights, {remaining:.0f}s left")
        sleep(min(poll_interval, remaining))


__all__ = [
    "TrafficDecision",
    "TrafficReconciler",
    "WeightIncrease",
    "await_traffic_weights",
    "default_traffic",
    "set_desired_weights",
    "validate_weights",
    "weights_converged",
]
