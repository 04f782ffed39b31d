"""
Converge - Command Line Interface

Sub-commands for validating, planning, applying and destroying a configuration,
reading outputs and state, tainting resources and serving the HTTP API.

Exit codes:
    0 - success (plan: no changes when --detailed-exitcode is set)
    1 - error
    2 - plan has changes (only with --detailed-exitcode)
"""

from __future__ import annotations
import argparse
import asyncio
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from converge.adapters.base import ProviderError
from converge.config import configure_logging, load_settings
from converge.engine.engine import ConvergeEngine, create_engine
from converge.engine.graph import CycleError, GraphBuilder
from converge.engine.parser import ConfigParser, ParseError
from converge.engine.planner import PlanError, render_plan
from converge.models import EntryStatus, RunStatus, RunSummary
from converge.storage import LockError

logger = logging.getLogger(__name__)


# =============================================================================
# ARGUMENTS
# =============================================================================

def _parse_var(value: str) -> tuple:
    if "=" not in value:
        raise argparse.ArgumentTypeError(f"Expected NAME=VALUE, got: {value}")
    name, raw = value.split("=", 1)
    # Values are YAML scalars so numbers and lists keep their type
    return name.strip(), yaml.safe_load(raw) if raw else ""


def _add_config_arguments(parser: argparse.ArgumentParser, refresh: bool = True) -> None:
    parser.add_argument("file", help="YAML resource configuration")
    parser.add_argument(
        "-var",
        "--var",
        dest="vars",
        action="append",
        type=_parse_var,
        default=[],
        metavar="NAME=VALUE",
        help="Set a variable (repeatable)",
    )
    parser.add_argument(
        "--var-file",
        dest="var_files",
        action="append",
        default=[],
        help="YAML file of variable values (repeatable)",
    )
    if not refresh:
        return
    parser.add_argument(
        "--no-refresh",
        dest="refresh",
        action="store_false",
        help="Skip re-reading recorded resources from the provider",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="converge",
        description="Declarative infrastructure convergence engine.",
    )
    parser.add_argument("--config", help="Settings file (default: converge.yaml)")
    parser.add_argument("--workspace", help="State workspace name")
    parser.add_argument("--state-dir", help="Directory holding state and lock files")
    parser.add_argument("--parallelism", type=int, help="Maximum concurrent provider calls")
    parser.add_argument("--log-level", help="Logging level (DEBUG, INFO, WARNING, ...)")

    sub = parser.add_subparsers(dest="command", required=True)

    plan = sub.add_parser("plan", help="Show the changes an apply would make")
    _add_config_arguments(plan)
    plan.add_argument("--destroy", action="store_true", help="Plan destruction of everything")
    plan.add_argument(
        "--detailed-exitcode",
        action="store_true",
        help="Exit 2 when the plan has changes",
    )
    plan.add_argument("--json", action="store_true", help="Print the plan as JSON")

    apply = sub.add_parser("apply", help="Converge infrastructure to the configuration")
    _add_config_arguments(apply)

    destroy = sub.add_parser("destroy", help="Destroy every recorded resource")
    _add_config_arguments(destroy)

    validate = sub.add_parser("validate", help="Check a configuration without reading state")
    _add_config_arguments(validate, refresh=False)

    output = sub.add_parser("output", help="Show outputs of the last apply")
    output.add_argument("name", nargs="?", help="Single output to show")
    output.add_argument("--json", action="store_true", help="Print as JSON")

    state = sub.add_parser("state", help="Inspect recorded state")
    state_sub = state.add_subparsers(dest="state_command", required=True)
    state_sub.add_parser("list", help="List recorded resource addresses")
    show = state_sub.add_parser("show", help="Show one recorded resource")
    show.add_argument("address")

    taint = sub.add_parser("taint", help="Force replacement of a resource on next apply")
    taint.add_argument("address")

    untaint = sub.add_parser("untaint", help="Clear a taint mark")
    untaint.add_argument("address")

    unlock = sub.add_parser("force-unlock", help="Remove a stale state lock")
    unlock.add_argument("lock_id")

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    return parser


# =============================================================================
# HELPERS
# =============================================================================

def _load_engine(args: argparse.Namespace) -> ConvergeEngine:
    settings = load_settings(
        args.config,
        overrides={
            "workspace": args.workspace,
            "state_dir": args.state_dir,
            "parallelism": args.parallelism,
            "log_level": args.log_level,
        },
    )
    configure_logging(settings.log_level)

    # The simulated provider keeps its resources next to the state between runs
    if settings.provider.type == "fake" and settings.provider.state_file is None:
        settings.provider.state_file = str(
            Path(settings.state_dir) / f"{settings.workspace}.provider.json"
        )
    return create_engine(settings)


def _read_inputs(args: argparse.Namespace) -> tuple:
    yaml_content = Path(args.file).read_text(encoding="utf-8")
    variables: Dict[str, Any] = {}

    for var_file in args.var_files:
        with open(var_file, "r", encoding="utf-8") as f:
            variables.update(yaml.safe_load(f) or {})
    variables.update(dict(args.vars))
    return yaml_content, variables


def _print_summary(summary: RunSummary) -> None:
    for result in summary.results:
        if result.status == EntryStatus.FAILED:
            print(f"Error: {result.address}: {result.error_message}", file=sys.stderr)

    if summary.status == RunStatus.COMPLETED:
        print(
            f"Apply complete! Resources: {summary.added} added, "
            f"{summary.changed} changed, {summary.destroyed} destroyed."
        )
    else:
        print(
            f"Apply {summary.status.value}: {summary.added} added, "
            f"{summary.changed} changed, {summary.destroyed} destroyed, "
            f"{summary.failed} failed, {summary.skipped} skipped."
        )

    if summary.outputs:
        print("\nOutputs:\n")
        _print_outputs(summary.outputs)


def _print_outputs(outputs: Dict[str, Any]) -> None:
    for name, value in sorted(outputs.items()):
        print(f"{name} = {json.dumps(value)}")


async def _apply(engine: ConvergeEngine, yaml_content: str, variables: Dict[str, Any],
                 destroy: bool, refresh: bool) -> RunSummary:
    loop = asyncio.get_running_loop()
    # Signal handlers can only be installed from the main thread
    handle_sigint = threading.current_thread() is threading.main_thread()
    if handle_sigint:
        loop.add_signal_handler(signal.SIGINT, engine.cancel)
    try:
        return await engine.apply(
            yaml_content,
            variables=variables,
            destroy=destroy,
            refresh=refresh,
        )
    finally:
        if handle_sigint:
            loop.remove_signal_handler(signal.SIGINT)


# =============================================================================
# COMMANDS
# =============================================================================

def cmd_plan(engine: ConvergeEngine, args: argparse.Namespace) -> int:
    yaml_content, variables = _read_inputs(args)
    plan = asyncio.run(
        engine.plan(
            yaml_content,
            variables=variables,
            destroy=args.destroy,
            refresh=args.refresh,
        )
    )
    if args.json:
        print(json.dumps(plan.model_dump(mode="json"), indent=2))
    else:
        for address in plan.drifted:
            print(f"Note: {address} was deleted outside of converge")
        print(render_plan(plan))

    if args.detailed_exitcode and (plan.has_changes or plan.drifted):
        return 2
    return 0


def cmd_apply(engine: ConvergeEngine, args: argparse.Namespace, destroy: bool = False) -> int:
    yaml_content, variables = _read_inputs(args)
    summary = asyncio.run(_apply(engine, yaml_content, variables, destroy, args.refresh))
    _print_summary(summary)
    return 0 if summary.status == RunStatus.COMPLETED else 1


def cmd_validate(args: argparse.Namespace) -> int:
    yaml_content, variables = _read_inputs(args)
    config = ConfigParser().parse(yaml_content, variables)
    graph = GraphBuilder().build(config)
    print(
        f"Success! The configuration is valid: {len(graph)} resources, "
        f"{len(config.outputs)} outputs."
    )
    return 0


def cmd_output(engine: ConvergeEngine, args: argparse.Namespace) -> int:
    outputs = engine.outputs()
    if args.name:
        if args.name not in outputs:
            print(f"Error: output '{args.name}' not found", file=sys.stderr)
            return 1
        value = outputs[args.name]
        print(json.dumps(value) if args.json or not isinstance(value, str) else value)
        return 0

    if args.json:
        print(json.dumps(outputs, indent=2))
    else:
        _print_outputs(outputs)
    return 0


def cmd_state(engine: ConvergeEngine, args: argparse.Namespace) -> int:
    snapshot = engine.state()
    if args.state_command == "list":
        for address in snapshot.resources:
            print(address)
        return 0

    record = snapshot.resources.get(args.address)
    if record is None:
        print(f"Error: {args.address} not in state", file=sys.stderr)
        return 1
    print(json.dumps(record.model_dump(mode="json"), indent=2))
    return 0


def cmd_taint(engine: ConvergeEngine, args: argparse.Namespace, taint: bool = True) -> int:
    try:
        record = engine.taint(args.address) if taint else engine.untaint(args.address)
    except KeyError:
        print(f"Error: {args.address} not in state", file=sys.stderr)
        return 1
    print(f"{record.address} is now {record.status.value}")
    return 0


def cmd_force_unlock(engine: ConvergeEngine, args: argparse.Namespace) -> int:
    engine.store.force_unlock(args.lock_id)
    print(f"Lock {args.lock_id} removed")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("converge.main:app", host=args.host, port=args.port, log_level="info")
    return 0


# =============================================================================
# MAIN
# =============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "serve":
        return cmd_serve(args)

    engine: Optional[ConvergeEngine] = None
    try:
        if args.command == "validate":
            return cmd_validate(args)

        engine = _load_engine(args)
        if args.command == "plan":
            return cmd_plan(engine, args)
        if args.command == "apply":
            return cmd_apply(engine, args)
        if args.command == "destroy":
            return cmd_apply(engine, args, destroy=True)
        if args.command == "output":
            return cmd_output(engine, args)
        if args.command == "state":
            return cmd_state(engine, args)
        if args.command == "taint":
            return cmd_taint(engine, args)
        if args.command == "untaint":
            return cmd_taint(engine, args, taint=False)
        if args.command == "force-unlock":
            return cmd_force_unlock(engine, args)
        return 1

    except ParseError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        for error in e.errors:
            print(f"  - {error}", file=sys.stderr)
        return 1
    except (CycleError, PlanError) as e:
        print(f"Error: {e.message}", file=sys.stderr)
        for error in getattr(e, "errors", []):
            print(f"  - {error}", file=sys.stderr)
        return 1
    except LockError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    except ProviderError as e:
        print(f"Error: provider call failed: {e}", file=sys.stderr)
        return 1
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        if engine is not None:
            engine.close()


if __name__ == "__main__":
    sys.exit(main())
