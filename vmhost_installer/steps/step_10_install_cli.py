from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from ..errors import ValidationError
from ..lib.pkg import ensure_packages
from ..verify import VerificationResult, check

if TYPE_CHECKING:
    from ..context import StepContext

logger = logging.getLogger(__name__)

WRAPPER_DIR = "/usr/local/bin"


class InstallCliStep:
    step_id = "10_install_cli"
    display_name = "Install the appliance CLI"
    ordinal = 10
    reboot_hint = False

    def _venv(self, ctx: "StepContext") -> Path:
        return Path(ctx.host_path(ctx.config.get_str("cli_venv_dir")))

    def _importable(self, ctx: "StepContext") -> bool:
        python = self._venv(ctx) / "bin/python"
        if not python.exists():
            return False
        return ctx.runner.probe([str(python), "-c", f"import {ctx.config.get_str('cli_module')}"]).ok

    def run(self, ctx: "StepContext") -> None:
        cfg = ctx.config
        if self._importable(ctx) and ctx.prompter.confirm("The CLI is already installed. Skip this step?", default=True):
            logger.info("CLI already installed; skipped")
            return

        source = cfg.get_str("cli_package_source")
        if not source:
            source = ctx.prompter.ask("CLI package (path, URL or requirement)")
            if not source:
                raise ValidationError("No CLI package source given")
            cfg.set("cli_package_source", source)

        ensure_packages(ctx.runner, ["python3-venv", "python3-pip"])
        venv = self._venv(ctx)
        if not (venv / "bin/python").exists():
            ctx.runner.run(["python3", "-m", "venv", str(venv)])
        pip = str(venv / "bin/pip")
        ctx.runner.run([pip, "install", "--upgrade", "pip", "setuptools"])
        ctx.runner.run([pip, "install", source])

        command = cfg.get_str("cli_command")
        wrapper = f'#!/bin/sh\nexec "{venv}/bin/{command}" "$@"\n'
        ctx.runner.ensure_file(ctx.host_path(f"{WRAPPER_DIR}/{command}"), wrapper, mode=0o755)

    def verify(self, ctx: "StepContext") -> VerificationResult:
        command = ctx.config.get_str("cli_command")
        return VerificationResult(
            [
                check("venv module import", self._importable(ctx), ctx.config.get_str("cli_module")),
                check("wrapper", Path(ctx.host_path(f"{WRAPPER_DIR}/{command}")).exists(), command),
            ]
        )
