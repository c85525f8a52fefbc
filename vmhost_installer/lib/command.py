from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence

from ..errors import ActionFailure

logger = logging.getLogger(__name__)

# Read-only queries (virsh, lvs, dpkg-query) that hang are treated as failed.
PROBE_TIMEOUT_S = 60


@dataclass(frozen=True)
class CmdResult:
    argv: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def _fmt_argv(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(a) for a in argv)


def run_cmd(
    argv: Sequence[str],
    *,
    check: bool = True,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    input_text: str | None = None,
    dry_run: bool = False,
    timeout: float | None = None,
) -> CmdResult:
    """Run a command with consistent logging.

    - Always logs the command.
    - dry_run records the intent and returns success without executing.
    - check=True turns a non-zero exit into ActionFailure.
    - A command running past `timeout` seconds is killed and reported as exit 124.
    """

    argv_list = list(argv)

    if dry_run:
        logger.info("[DRY-RUN] %s", _fmt_argv(argv_list))
        return CmdResult(argv=argv_list, returncode=0, stdout="", stderr="")

    logger.info("CMD %s", _fmt_argv(argv_list))
    try:
        p = subprocess.run(
            argv_list,
            input=input_text,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
            env=dict(os.environ, **(env or {})),
            timeout=timeout,
        )
    except FileNotFoundError as e:
        if check:
            raise ActionFailure(f"Command not found: {argv_list[0]}", argv=argv_list, returncode=127) from e
        return CmdResult(argv=argv_list, returncode=127, stdout="", stderr=str(e))
    except subprocess.TimeoutExpired as e:
        logger.warning("Timed out after %ss: %s", timeout, _fmt_argv(argv_list))
        if check:
            raise ActionFailure(f"Command timed out after {timeout}s: {_fmt_argv(argv_list)}", argv=argv_list, returncode=124) from e
        return CmdResult(argv=argv_list, returncode=124, stdout="", stderr="timeout")

    if p.stdout:
        logger.debug("STDOUT %s", p.stdout.strip())
    if check and p.returncode != 0 and p.stderr:
        logger.warning("Exit %d from %s: %s", p.returncode, argv_list[0], p.stderr.strip())
    elif p.stderr:
        logger.debug("STDERR %s", p.stderr.strip())

    if check and p.returncode != 0:
        raise ActionFailure(
            f"Command failed ({p.returncode}): {_fmt_argv(argv_list)}",
            argv=argv_list,
            returncode=p.returncode,
            stderr=p.stderr,
        )

    return CmdResult(argv=argv_list, returncode=p.returncode, stdout=p.stdout, stderr=p.stderr)


class CommandRunner:
    """Action capability handed to steps.

    run() mutates the host and degrades to "log intent, succeed" in simulation.
    probe() is read-only: it always executes, so end-state detection and
    verification see the real host even in simulation.
    """

    def __init__(self, *, dry_run: bool = False) -> None:
        self.dry_run = dry_run

    def run(
        self,
        argv: Sequence[str],
        *,
        check: bool = True,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        input_text: str | None = None,
    ) -> CmdResult:
        return run_cmd(argv, check=check, env=env, cwd=cwd, input_text=input_text, dry_run=self.dry_run)

    def probe(self, argv: Sequence[str]) -> CmdResult:
        return run_cmd(argv, check=False, timeout=PROBE_TIMEOUT_S)

    def write_file(self, path: str, contents: str, *, mode: Optional[int] = None) -> None:
        p = Path(path)
        if self.dry_run:
            logger.info("[DRY-RUN] Would write %s:\n%s", str(p), contents)
            return
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(contents, encoding="utf-8")
        if mode is not None:
            p.chmod(mode)
        logger.info("Wrote %s", str(p))

    def ensure_file(self, path: str, contents: str, *, mode: Optional[int] = None) -> bool:
        """Write `contents` unless the file already holds exactly that. Returns True if written."""

        p = Path(path)
        if p.exists() and p.read_text(encoding="utf-8") == contents:
            logger.info("%s is up to date", str(p))
            return False
        self.write_file(path, contents, mode=mode)
        return True
