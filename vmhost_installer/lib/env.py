from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Paths:
    base_dir: str
    state_dir: str
    config_file: str
    state_file: str
    log_file: str
    work_dir: str


def default_paths() -> Paths:
    """Pick the installer directory: /opt when running as root, $HOME otherwise."""

    if os.geteuid() == 0:
        base = Path("/opt/vmhost-installer")
    else:
        base = Path.home() / "vmhost-installer"
    state = base / "state"
    return Paths(
        base_dir=str(base),
        state_dir=str(state),
        config_file=str(state / "config.yaml"),
        state_file=str(state / "state.yaml"),
        log_file=str(state / "install.log"),
        work_dir=str(base / "work"),
    )
