import argparse
import json
import sys
import threading

from stackset_controller.config import load_config
from stackset_controller.controller import build_apis, build_controller
from stackset_controller.errors import ConvergenceTimeoutError, InconsistentStateError, MisconfigurationError
from stackset_controller.kube import IngressTrafficBackend, StackSetStore
from stackset_controller.logger import ControllerLogger
from stackset_controller.traffic import await_traffic_weights, set_desired_weights

WEIGHT_KIND_ACTUAL = "actual"
WEIGHT_KIND_DESIRED = "desired"


def parse_weights(pairs: list[str]) -> dict[str, float]:
    weights = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            raise argparse.ArgumentTypeError(f"expected STACK=WEIGHT, got {pair!r}")
        try:
            weights[name] = float(value)
        except ValueError:
            raise argparse.ArgumentTypeError(f"weight of {name} is not a number: {value!r}")
    return weights


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="stackset-controller")
    parser.add_argument("--config", help="path to the YAML configuration file")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="run the reconciliation loop")
    run.add_argument("--once", action="store_true", help="reconcile every StackSet once and exit")

    st = sub.add_parser("set-traffic", help="set the desired traffic weights of a StackSet")
    st.add_argument("stackset")
    st.add_argument("weights", nargs="+", metavar="STACK=WEIGHT")

    at = sub.add_parser("await-traffic", help="wait until traffic weights match")
    at.add_argument("stackset")
    at.add_argument("weights", nargs="+", metavar="STACK=WEIGHT")
    at.add_argument("--kind", choices=[WEIGHT_KIND_ACTUAL, WEIGHT_KIND_DESIRED], default=WEIGHT_KIND_ACTUAL)
    at.add_argument("--timeout", type=float, default=240.0, help="seconds to wait")
    at.add_argument("--poll-interval", type=float, default=5.0)
    return parser


def cmd_run(cfg, args) -> int:
    controller = build_controller(cfg)
    if args.once:
        results = controller.run_once()
        sys.stdout.write(json.dumps({
            r.stackset: {
                "skipped": r.skipped,
                "targets": {n: [t.mode.value, t.replicas] for n, t in r.targets.items()},
                "deleted": r.deleted,
            }
            for r in results
        }))
        return 0
    controller.run(threading.Event())
    return 0


def cmd_set_traffic(cfg, args, logger) -> int:
    store = StackSetStore(build_apis(cfg)["custom"], cfg.namespace)
    stackset = store.get_stackset(args.stackset)
    if stackset is None:
        logger.error(f"StackSet {cfg.namespace}/{args.stackset} not found")
        return 1
    names = [s["metadata"]["name"] for s in store.list_stacks(args.stackset)]
    try:
        weights = set_desired_weights(names, parse_weights(args.weights), cfg.weight_sum_tolerance, args.stackset)
    except InconsistentStateError as e:
        logger.error(str(e))
        return 1
    store.patch_stackset_traffic(args.stackset, weights)
    sys.stdout.write(json.dumps(weights.as_dict()))
    return 0


def cmd_await_traffic(cfg, args, logger) -> int:
    backend = IngressTrafficBackend(build_apis(cfg)["networking"], cfg.namespace)
    # desired: what the controller has handed to the Ingress, actual: what it routes
    reader = backend.read_actual if args.kind == WEIGHT_KIND_ACTUAL else backend.read_desired

    def read():
        return reader(args.stackset).as_dict()

    try:
        observed = await_traffic_weights(
            read,
            parse_weights(args.weights),
            timeout=args.timeout,
            poll_interval=args.poll_interval,
            tolerance=cfg.convergence_tolerance,
            stackset=args.stackset,
        )
    except ConvergenceTimeoutError as e:
        logger.error(str(e))
        return 1
    sys.stdout.write(json.dumps(observed))
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        cfg = load_config(args.config)
    except MisconfigurationError as e:
        sys.stderr.write(f"{e}\n")
        return 2
    logger = ControllerLogger("main", level=cfg.log_level_value, log_file=cfg.log_file, force=True).logger

    try:
        if args.command == "run":
            return cmd_run(cfg, args)
        if args.command == "set-traffic":
            return cmd_set_traffic(cfg, args, logger)
        return cmd_await_traffic(cfg, args, logger)
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))
    return 2
