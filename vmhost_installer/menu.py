from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Dict, List

from .errors import UserCancelled, ValidationError
from .logging_utils import current_log_path, tail_log
from .prompts import Prompter
from .verify import full_validation_report, render_report

if TYPE_CHECKING:
    from .main import Session

logger = logging.getLogger(__name__)

AUTO = "Auto-run from the next pending step"
PICK = "Run a specific step"
CONFIG = "Configuration"
VALIDATE = "Full validation"
STATUS = "Step status"
LOG = "View log"
EXIT = "Exit"

BACK = "Back"


def _status_text(session: "Session") -> str:
    lines = []
    for row in session.orchestrator.status_rows():
        mark = "[x]" if row["completed"] else ("[>]" if row["next"] else "[ ]")
        lines.append(f"{mark} {row['step_id']}  {row['display_name']}")
    return "\n".join(lines)


def _header(session: "Session") -> str:
    cfg = session.config
    nxt = session.orchestrator.next_pending_step()
    return (
        f"dry_run={'on' if cfg.dry_run else 'off'}  "
        f"auto_reboot={'on' if cfg.get_bool('enable_auto_reboot', True) else 'off'}  "
        f"net_mode={cfg.get_str('net_mode')}  "
        f"next={nxt.step_id if nxt else '(all done)'}"
    )


def _auto_run(session: "Session", prompter: Prompter) -> None:
    results = session.orchestrator.run_to_completion()
    if results:
        prompter.notify("\n".join(f"{r.step_id}: {r.outcome.value}" for r in results))


def _pick_step(session: "Session", prompter: Prompter) -> None:
    rows = session.orchestrator.status_rows()
    labels = [f"{r['step_id']}  {r['display_name']}" + ("  (done)" if r["completed"] else "") for r in rows]
    choice = prompter.choose("Select a step to run", labels + [BACK], default=BACK)
    if choice == BACK:
        return
    step_id = rows[labels.index(choice)]["step_id"]
    result = session.orchestrator.run_step(step_id)
    prompter.notify(f"{result.step_id}: {result.outcome.value}")


def _configure(session: "Session", prompter: Prompter) -> None:
    cfg = session.config
    while True:
        options: Dict[str, Callable[[], None]] = {
            f"Dry run: {'on' if cfg.dry_run else 'off'} (toggle)": lambda: cfg.set("dry_run", not cfg.dry_run),
            f"Auto reboot: {'on' if cfg.get_bool('enable_auto_reboot', True) else 'off'} (toggle)": lambda: cfg.set(
                "enable_auto_reboot", not cfg.get_bool("enable_auto_reboot", True)
            ),
            f"Appliance version: {cfg.get_str('appliance_version')}": lambda: cfg.set(
                "appliance_version", prompter.ask("Appliance version", default=cfg.get_str("appliance_version"))
            ),
            "Image repository URL and credentials": lambda: _set_repo(session, prompter),
            f"Network mode: {cfg.get_str('net_mode')}": lambda: cfg.set(
                "net_mode", prompter.choose("Network mode", ["bridge", "nat"], default=cfg.get_str("net_mode"))
            ),
            f"Capture attach mode: {cfg.get_str('capture_attach_mode')}": lambda: cfg.set(
                "capture_attach_mode",
                prompter.choose("Capture attach mode", ["pci", "bridge"], default=cfg.get_str("capture_attach_mode")),
            ),
            "Show current settings": lambda: prompter.notify(
                "\n".join(f"{k} = {v}" for k, v in cfg.masked().items())
            ),
        }
        labels: List[str] = list(options) + [BACK]
        choice = prompter.choose("Configuration", labels, default=BACK)
        if choice == BACK:
            return
        options[choice]()


def _set_repo(session: "Session", prompter: Prompter) -> None:
    cfg = session.config
    url = prompter.ask("Image repository URL", default=cfg.get_str("image_repo_url"))
    user = prompter.ask("Repository username", default=cfg.get_str("image_repo_username"))
    password = prompter.ask("Repository password", default=cfg.get_str("image_repo_password"), secret=True)
    cfg.update({"image_repo_url": url, "image_repo_username": user, "image_repo_password": password})


def run_menu(open_session: Callable[[], "Session"], prompter: Prompter) -> int:
    """Interactive main loop. The session is reloaded every round so edits apply immediately."""

    actions = {
        AUTO: _auto_run,
        PICK: _pick_step,
        CONFIG: _configure,
        VALIDATE: lambda s, p: p.notify(render_report(full_validation_report(s.orchestrator.ctx))),
        STATUS: lambda s, p: p.notify(_status_text(s)),
        LOG: lambda s, p: p.notify(tail_log(current_log_path(s.paths.log_file)) or "(log is empty)"),
    }
    while True:
        session = open_session()
        try:
            choice = prompter.choose(f"vmhost-installer  {_header(session)}", list(actions) + [EXIT], default=EXIT)
            if choice == EXIT:
                return 0
            actions[choice](session, prompter)
        except UserCancelled:
            if _confirm_exit(prompter):
                return 0
        except ValidationError as e:
            prompter.notify(f"ERROR: {e}")


def _confirm_exit(prompter: Prompter) -> bool:
    try:
        return prompter.confirm("Exit the installer?", default=True)
    except UserCancelled:
        return True
