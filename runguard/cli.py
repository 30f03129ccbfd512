from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import uvicorn
import yaml

from .exceptions import RunguardError

EXIT_NEEDS_MANUAL_TRIGGER = 3


def _parse_params(pairs: Optional[List[str]]) -> Dict[str, Any]:
    """k=v pairs; values are parsed as YAML scalars so numbers and booleans keep their type."""
    params: Dict[str, Any] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"invalid parameter {pair!r}; expected key=value")
        params[key] = yaml.safe_load(value)
    return params


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="runguard")
    parser.add_argument("--log-level", default=None, help="Override the configured log level")
    sub = parser.add_subparsers(dest="subcommand", required=True)

    # --- analyze ---
    analyze = sub.add_parser("analyze", help="Print the safety analysis of a runbook file")
    analyze.add_argument("file", type=Path, help="Runbook YAML/JSON file")

    # --- dry-run ---
    dry = sub.add_parser("dry-run", help="Simulate a runbook without side effects")
    dry.add_argument("file", type=Path, help="Runbook YAML/JSON file")
    dry.add_argument("--param", action="append", metavar="KEY=VALUE", help="Runbook parameter (repeatable)")

    # --- list ---
    lst = sub.add_parser("list", help="List runbook packs")
    lst.add_argument("--packs", type=Path, default=None, help="Packs directory")

    # --- serve ---
    serve = sub.add_parser("serve", help="Run the HTTP control surface")
    serve.add_argument("--host", default="127.0.0.1", help="Bind host")
    serve.add_argument("--port", type=int, default=8788, help="Bind port")
    serve.add_argument("--executor", default=None, help="Step executor as module:attribute")

    # --- settings ---
    sub.add_parser("settings", help="Print current engine settings")

    return parser


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    from .settings import get_settings

    settings = get_settings()
    log_level = (args.log_level or settings.log_level).upper()
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        if args.subcommand == "analyze":
            from .runbooks.registry import RunbookRegistry
            from .safety.analyzer import SafetyAnalyzer

            runbook = RunbookRegistry.load_file(args.file)
            analysis = SafetyAnalyzer().analyze(runbook)
            _print_json(analysis.model_dump(mode="json"))
            return 0 if analysis.can_run_automatically else EXIT_NEEDS_MANUAL_TRIGGER

        if args.subcommand == "dry-run":
            from .execution.dry_run import DryRunSimulator
            from .runbooks.registry import RunbookRegistry
            from .safety.analyzer import SafetyAnalyzer

            runbook = RunbookRegistry.load_file(args.file)
            simulator = DryRunSimulator(SafetyAnalyzer(), settings.default_step_duration_seconds)
            result = simulator.simulate(runbook, _parse_params(args.param))
            _print_json(result.model_dump(mode="json"))
            return 0

        if args.subcommand == "list":
            from .runbooks.registry import discover_runbooks

            packs = args.packs or (Path(settings.packs_dir) if settings.packs_dir else None)
            for rb in discover_runbooks(packs):
                print(f"{rb['file']}\t{rb['name']}\t{rb['steps']} steps")
            return 0

        if args.subcommand == "serve":
            from .server import build_controller, create_app

            if args.executor:
                settings = settings.model_copy(update={"step_executor": args.executor})
            controller, approvals = build_controller(settings)
            app = create_app(controller, approvals)
            uvicorn.run(app, host=args.host, port=args.port, reload=False, log_level=log_level.lower())
            return 0

        if args.subcommand == "settings":
            print(settings.model_dump_json(indent=2))
            return 0

    except (RunguardError, argparse.ArgumentTypeError, ValueError, yaml.YAMLError) as e:
        message = getattr(e, "message", None) or str(e)
        print(f"ERROR: {message}", file=sys.stderr)
        return 1

    parser.print_help()
    return 2


if __name__ == "__main__":
    sys.exit(main())
