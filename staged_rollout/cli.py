import argparse
import asyncio
import json
import os
import signal
import sys

from .config import load_config
from .engine import RolloutEngine
from .errors import ConfigurationInvalid
from .failure import FailureInjector
from .logger import LEVELS, setup_logging, get_logger
from .models import Outcome
from .prober import HealthProber
from .slots import SlotManager

EXIT_CODES = {
    Outcome.PROMOTED: 0,
    Outcome.FAILED: 1,
    Outcome.ROLLED_BACK: 2,  # Production was protected; not an error
}


def load_state(path):
    if not path or not os.path.exists(path):
        return {}
    with open(path) as f:
        data = json.load(f)
    return {env: SlotManager.from_dict(slots) for env, slots in data.items()}


def save_state(path, managers):
    with open(path, "w") as f:
        json.dump({env: m.to_dict() for env, m in managers.items()}, f, indent=2)


def build_parser():
    parser = argparse.ArgumentParser(prog="staged-rollout",
                                     description="Stage, verify and promote builds")
    parser.add_argument("--log-level", default="INFO", type=str.upper, choices=LEVELS)
    parser.add_argument("--log-file")
    sub = parser.add_subparsers(dest="cmd", required=True)

    rollout = sub.add_parser("rollout", help="stage a build and promote it if healthy")
    rollout.add_argument("--artifact", required=True)
    rollout.add_argument("--environment", required=True)
    rollout.add_argument("--config", help="JSON rollout config")
    rollout.add_argument("--endpoint", help="health endpoint, overrides the config")
    rollout.add_argument("--state", default=".rollout-state.json")
    rollout.add_argument("--production-version", help="current production build for a new environment")
    rollout.add_argument("--probe-script", help="simulate probes, e.g. pass,pass,fail,pass")
    rollout.add_argument("--cadence", type=float, help="seconds between probes")

    status = sub.add_parser("status", help="show slot bindings")
    status.add_argument("--state", default=".rollout-state.json")
    status.add_argument("--environment")

    audit = sub.add_parser("audit", help="show the swap/discard audit log")
    audit.add_argument("--state", default=".rollout-state.json")
    audit.add_argument("--environment")

    discard = sub.add_parser("discard", help="clear a staging slot")
    discard.add_argument("--state", default=".rollout-state.json")
    discard.add_argument("--environment", required=True)
    discard.add_argument("--actor", default="operator")
    return parser


def run_rollout(args):
    logger = get_logger("cli")
    try:
        config = load_config(args.config, endpoint=args.endpoint, validate=False)
        if args.cadence is not None:
            config.health.interval_s = args.cadence
        managers = load_state(args.state)
        injector = FailureInjector.from_script(args.probe_script) if args.probe_script else None
    except (ConfigurationInvalid, OSError, ValueError) as e:
        print(f"Error: {e}")
        return EXIT_CODES[Outcome.FAILED]

    if args.environment not in managers:
        managers[args.environment] = SlotManager(args.environment, args.production_version)

    async def run():
        engine = RolloutEngine(managers, prober=HealthProber(failure_injector=injector))
        deployment = engine.start(args.artifact, args.environment, config)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, engine.abort, deployment.deployment_id, sig.name)
            except NotImplementedError:
                logger.debug(f"Cannot trap {sig.name} on this platform")
        try:
            return await engine.wait(deployment.deployment_id)
        finally:
            await engine.close()

    deployment = asyncio.run(run())
    save_state(args.state, managers)
    print(json.dumps(deployment.to_dict(), indent=2))
    return EXIT_CODES[deployment.outcome]


def show(args):
    managers = load_state(args.state)
    if args.environment:
        if args.environment not in managers:
            print(f"Error: no state for environment {args.environment}")
            return 1
        managers = {args.environment: managers[args.environment]}
    if args.cmd == "status":
        out = {env: {k: v for k, v in m.to_dict().items() if k != "audit"} for env, m in managers.items()}
    else:
        out = {env: m.to_dict()["audit"] for env, m in managers.items()}
    print(json.dumps(out, indent=2))
    return 0


def discard_staging(args):
    managers = load_state(args.state)
    if args.environment not in managers:
        print(f"Error: no state for environment {args.environment}")
        return 1
    managers[args.environment].discard(actor=args.actor)
    save_state(args.state, managers)
    print("Done.")
    return 0


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    try:
        if args.cmd == "rollout":
            code = run_rollout(args)
        elif args.cmd == "discard":
            code = discard_staging(args)
        else:
            code = show(args)
    except (OSError, ValueError, KeyError) as e:
        print(f"Error: {e}")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
