from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass, replace
from typing import Any, Optional

import yaml

from .config_store import DEFAULTS, ConfigRecord, load_config
from .context import build_context
from .errors import RebootRequired, ValidationError
from .lib.command import CommandRunner
from .lib.env import Paths, default_paths
from .logging_utils import configure_logging, current_log_path, tail_log
from .pipeline import Orchestrator, StepOutcome, StepRegistry, StepRunResult
from .prompts import AssumeYesPrompter, ConsolePrompter, Prompter
from .reboot import RebootCoordinator, RebootPolicy
from .state_store import StepStateStore
from .steps import (
    DeployStep,
    HwDetectStep,
    HweKernelStep,
    InstallCliStep,
    KernelTuningStep,
    KvmLibvirtStep,
    LibvirtHooksStep,
    NicNamingStep,
    PassthroughStep,
    VolumesStep,
)
from .verify import full_validation_report, render_report

logger = logging.getLogger(__name__)

# Per-VM keys written at runtime (cpuset_<vm>, capture_ports_<vm>, ...).
_DYNAMIC_PREFIXES = ("cpuset_", "capture_ports_", "nic_capture", "nat_guest_ip_")


def build_steps():
    return [
        HwDetectStep(),
        HweKernelStep(),
        NicNamingStep(),
        KvmLibvirtStep(),
        KernelTuningStep(),
        LibvirtHooksStep(),
        VolumesStep(),
        DeployStep(),
        PassthroughStep(),
        InstallCliStep(),
    ]


def build_registry() -> StepRegistry:
    return StepRegistry(build_steps())


@dataclass
class Session:
    config: ConfigRecord
    paths: Paths
    orchestrator: Orchestrator


def build_orchestrator(
    config: ConfigRecord,
    paths: Paths,
    prompter: Prompter,
    *,
    runner: Optional[CommandRunner] = None,
    host_root: str = "/",
) -> Orchestrator:
    ctx = build_context(config, paths, prompter, runner=runner, host_root=host_root)
    store = StepStateStore(paths.state_file)
    reboot = RebootCoordinator(RebootPolicy.from_config(config), prompter, ctx.runner, store)
    return Orchestrator(build_registry(), ctx, store, reboot)


def _paths_from_args(args: argparse.Namespace) -> Paths:
    paths = default_paths()
    return replace(
        paths,
        config_file=args.config or paths.config_file,
        state_file=args.state or paths.state_file,
        log_file=args.log or paths.log_file,
    )


def _prompter_from_args(args: argparse.Namespace) -> Prompter:
    return AssumeYesPrompter() if args.yes else ConsolePrompter()


def open_session(args: argparse.Namespace, prompter: Optional[Prompter] = None) -> Session:
    """Load config from disk and wire a fresh orchestrator around it."""

    paths = _paths_from_args(args)
    config = load_config(paths.config_file)
    orch = build_orchestrator(config, paths, prompter or _prompter_from_args(args))
    return Session(config=config, paths=paths, orchestrator=orch)


def parse_value(text: str) -> Any:
    """Interpret a command-line value as a YAML scalar ("true" -> True, "4" -> 4)."""

    try:
        value = yaml.safe_load(text)
    except yaml.YAMLError:
        return text
    if isinstance(value, (dict, list)):
        return text
    return value


def _report(result: Optional[StepRunResult]) -> int:
    if result is None:
        print("All steps are complete.")
        return 0
    print(f"{result.step_id}: {result.outcome.value}")
    if result.verification is not None:
        print(result.verification.summary())
    return 1 if result.outcome == StepOutcome.failed else 0


def cmd_menu(args: argparse.Namespace) -> int:
    from .menu import run_menu

    prompter = _prompter_from_args(args)
    return run_menu(lambda: open_session(args, prompter), prompter)


def cmd_next(args: argparse.Namespace) -> int:
    return _report(open_session(args).orchestrator.run_next())


def cmd_run_step(args: argparse.Namespace) -> int:
    return _report(open_session(args).orchestrator.run_step(args.step_id))


def cmd_auto(args: argparse.Namespace) -> int:
    results = open_session(args).orchestrator.run_to_completion()
    for r in results:
        print(f"{r.step_id}: {r.outcome.value}")
    return 1 if results and results[-1].outcome == StepOutcome.failed else 0


def cmd_status(args: argparse.Namespace) -> int:
    for row in open_session(args).orchestrator.status_rows():
        mark = "done" if row["completed"] else ("next" if row["next"] else "")
        print(f"{row['step_id']:<20} {mark:<5} {row['display_name']}")
    return 0


def cmd_show_config(args: argparse.Namespace) -> int:
    session = open_session(args)
    print(f"# {session.paths.config_file}")
    print(yaml.safe_dump(session.config.masked(), sort_keys=False, default_flow_style=False), end="")
    return 0


def cmd_set(args: argparse.Namespace) -> int:
    key = args.key.strip().lower()
    if key not in DEFAULTS and not key.startswith(_DYNAMIC_PREFIXES):
        raise ValidationError(f"Unknown configuration key: {key}")
    open_session(args).config.set(key, parse_value(args.value))
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    report = full_validation_report(open_session(args).orchestrator.ctx)
    print(render_report(report))
    return 0


def cmd_log(args: argparse.Namespace) -> int:
    path = current_log_path(_paths_from_args(args).log_file)
    print(tail_log(path, lines=args.lines) or f"(log is empty: {path})", end="")
    return 0


def cmd_reset(args: argparse.Namespace) -> int:
    session = open_session(args)
    prompter = session.orchestrator.ctx.prompter
    if prompter.confirm(f"Delete {session.paths.state_file} and start over from the first step?", default=False):
        session.orchestrator.state_store.reset()
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="vmhost-installer")
    p.add_argument("--config", default=None, help="Path to the configuration file (yaml|json|conf)")
    p.add_argument("--state", default=None, help="Path to the step state file")
    p.add_argument("--log", default=None, help="Path to the install log")
    p.add_argument("--yes", action="store_true", help="Unattended: confirm every prompt and accept defaults")

    sub = p.add_subparsers(dest="command")

    sp = sub.add_parser("menu", help="Interactive main menu (default)")
    sp.set_defaults(func=cmd_menu)

    sp = sub.add_parser("next", help="Run the next pending step")
    sp.set_defaults(func=cmd_next)

    sp = sub.add_parser("run-step", help="Run one step by id (e.g. 07_volumes)")
    sp.add_argument("step_id")
    sp.set_defaults(func=cmd_run_step)

    sp = sub.add_parser("auto", help="Run pending steps until done, failed, cancelled or rebooting")
    sp.set_defaults(func=cmd_auto)

    sp = sub.add_parser("status", help="Show step completion")
    sp.set_defaults(func=cmd_status)

    sp = sub.add_parser("show-config", help="Print the configuration (passwords hidden)")
    sp.set_defaults(func=cmd_show_config)

    sp = sub.add_parser("set", help="Set one configuration key")
    sp.add_argument("key")
    sp.add_argument("value")
    sp.set_defaults(func=cmd_set)

    sp = sub.add_parser("validate", help="Run the full read-only validation")
    sp.set_defaults(func=cmd_validate)

    sp = sub.add_parser("log", help="Show the end of the install log")
    sp.add_argument("--lines", type=int, default=200)
    sp.set_defaults(func=cmd_log)

    sp = sub.add_parser("reset", help="Delete the step state file")
    sp.set_defaults(func=cmd_reset)

    return p


def run(args: argparse.Namespace) -> int:
    """Dispatch a parsed command line. A reboot in progress is a normal exit."""

    configure_logging(log_path=_paths_from_args(args).log_file, also_console=False)
    func = getattr(args, "func", None) or cmd_menu
    try:
        return int(func(args))
    except RebootRequired as e:
        logger.info("Exiting for reboot after %s", e.step_id)
        return 0
    except ValidationError as e:
        logger.error("%s", e)
        print(f"ERROR: {e}")
        return 2
    except Exception:
        logger.exception("Installer failed")
        raise


def main(argv: Optional[list[str]] = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)
    try:
        return run(args)
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
