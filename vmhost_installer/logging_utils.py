from __future__ import annotations

import logging
import os
from collections import deque
from pathlib import Path
from typing import Optional, Tuple

from .lib.env import default_paths

DEFAULT_LOG_PATH = default_paths().log_file
FALLBACK_LOG_NAME = "vmhost-installer.log"

_FILE_FORMAT = logging.Formatter(
    fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S%z",
)
_CONSOLE_FORMAT = logging.Formatter(fmt="%(levelname)s: %(message)s")

_active_path: Optional[str] = None


def _open_log(log_path: str) -> Tuple[logging.Handler, str]:
    """Append to `log_path`, or to the working directory when the state dir is not writable."""

    try:
        Path(os.path.dirname(log_path) or ".").mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(log_path), log_path
    except OSError:
        fallback = str(Path.cwd() / FALLBACK_LOG_NAME)
        return logging.FileHandler(fallback), fallback


def configure_logging(
    log_path: str = DEFAULT_LOG_PATH,
    level: int = logging.INFO,
    also_console: bool = True,
    console_level: int = logging.WARNING,
) -> str:
    """Route every record to the install log.

    Every operator decision and every host command ends up in the install log,
    which is the file failure messages point the operator at. The console only
    sees warnings and errors; prompts own the terminal.

    Handlers are installed once per process. Returns the file actually used.
    """

    global _active_path

    root = logging.getLogger()
    root.setLevel(level)
    if _active_path is not None:
        return _active_path

    file_handler, chosen = _open_log(log_path)
    file_handler.setFormatter(_FILE_FORMAT)
    root.addHandler(file_handler)

    if also_console:
        console = logging.StreamHandler()
        console.setLevel(console_level)
        console.setFormatter(_CONSOLE_FORMAT)
        root.addHandler(console)

    _active_path = chosen
    log = logging.getLogger(__name__)
    log.info("========== vmhost-installer session (pid %d) ==========", os.getpid())
    if chosen != log_path:
        log.warning("Cannot write %s; logging to %s instead", log_path, chosen)
    return chosen


def current_log_path(default: str = DEFAULT_LOG_PATH) -> str:
    return _active_path or default


def tail_log(path: str, lines: int = 200) -> str:
    p = Path(path)
    if not p.exists():
        return ""
    with p.open("r", encoding="utf-8", errors="replace") as f:
        return "".join(deque(f, maxlen=lines))
