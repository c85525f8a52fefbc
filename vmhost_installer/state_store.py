from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)


def _detect_format(path: Path) -> str:
    ext = path.suffix.lower().lstrip(".")
    if ext in {"json", "yaml", "yml"}:
        return ext
    if ext in {"conf", "state", "env"}:
        return "conf"
    # Default to YAML for unknown extensions.
    return "yaml"


def _parse_conf(text: str) -> Dict[str, Any]:
    """Parse `key="value"` lines, the plain-text format used by shell installers."""

    data: Dict[str, Any] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
            value = value[1:-1].replace('\\"', '"')
        data[key.strip().lower()] = value
    return data


def _render_conf(data: Dict[str, Any]) -> str:
    lines = ["# vmhost-installer (auto-generated)"]
    for key, value in data.items():
        if value is None:
            value = ""
        elif isinstance(value, bool):
            value = "1" if value else "0"
        esc = str(value).replace('"', '\\"')
        lines.append(f'{key}="{esc}"')
    return "\n".join(lines) + "\n"


def load_mapping(path: str) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        return {}

    fmt = _detect_format(p)
    text = p.read_text(encoding="utf-8")
    data: Any
    if fmt == "json":
        data = json.loads(text) if text.strip() else {}
    elif fmt == "conf":
        data = _parse_conf(text)
    else:
        data = yaml.safe_load(text) or {}

    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping, got {type(data)}")
    return data


def atomic_write_text(path: str, contents: str) -> None:
    """Write to a sibling temp file, fsync, then rename into place."""

    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_name(p.name + ".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        f.write(contents)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, p)


def save_mapping(path: str, data: Dict[str, Any]) -> None:
    p = Path(path)
    fmt = _detect_format(p)
    if fmt == "json":
        text = json.dumps(data, indent=2, sort_keys=True) + "\n"
    elif fmt == "conf":
        text = _render_conf(data)
    else:
        text = yaml.safe_dump(data, sort_keys=False, default_flow_style=False)
    atomic_write_text(path, text)


@dataclass(frozen=True)
class StepState:
    last_completed_step_id: Optional[str] = None
    completed_at: Optional[str] = None


class StepStateStore:
    """Persisted marker of the last completed step.

    The record is overwritten, never appended, after each successful step.
    Deleting the file forces a fresh run.
    """

    def __init__(self, path: str) -> None:
        self.path = path

    def load(self) -> StepState:
        data = load_mapping(self.path)
        last = data.get("last_completed_step") or None
        at = data.get("completed_at") or None
        return StepState(
            last_completed_step_id=str(last) if last else None,
            completed_at=str(at) if at else None,
        )

    def save(self, state: StepState) -> None:
        save_mapping(
            self.path,
            {
                "last_completed_step": state.last_completed_step_id or "",
                "completed_at": state.completed_at or "",
            },
        )

    def mark_completed(self, step_id: str, *, now: Optional[datetime] = None) -> StepState:
        at = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
        state = StepState(last_completed_step_id=step_id, completed_at=at)
        self.save(state)
        logger.info("State saved: last_completed_step=%s completed_at=%s", step_id, at)
        return state

    def reset(self) -> None:
        p = Path(self.path)
        if p.exists():
            p.unlink()
            logger.info("State file removed: %s", self.path)
