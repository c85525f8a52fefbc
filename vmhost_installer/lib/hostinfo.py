from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Optional


def _read_text(path: Path) -> Optional[str]:
    try:
        txt = path.read_text(encoding="utf-8", errors="ignore").strip()
        return txt or None
    except OSError:
        return None


def os_release(root: str = "/") -> Dict[str, str]:
    text = _read_text(Path(root) / "etc/os-release") or ""
    out: Dict[str, str] = {}
    for line in text.splitlines():
        if "=" not in line or line.startswith("#"):
            continue
        key, value = line.split("=", 1)
        out[key.strip()] = value.strip().strip('"')
    return out


def ubuntu_version(root: str = "/") -> Optional[str]:
    rel = os_release(root)
    if rel.get("ID") != "ubuntu":
        return None
    return rel.get("VERSION_ID")


def memory_total_mb(root: str = "/") -> Optional[int]:
    text = _read_text(Path(root) / "proc/meminfo") or ""
    for line in text.splitlines():
        if line.startswith("MemTotal:"):
            return int(line.split()[1]) // 1024
    return None


def kernel_cmdline(root: str = "/") -> str:
    return _read_text(Path(root) / "proc/cmdline") or ""


def kernel_release() -> str:
    return os.uname().release
