from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from ..errors import InstallerError
from ..lib import hostinfo
from ..lib.pkg import apt_install, apt_update, package_installed
from ..verify import VerificationResult, check

if TYPE_CHECKING:
    from ..context import StepContext

logger = logging.getLogger(__name__)

SUPPORTED_RELEASES = ("20.04", "22.04", "24.04")


def hwe_package(release: str) -> str:
    return f"linux-generic-hwe-{release}"


class HweKernelStep:
    step_id = "02_hwe_kernel"
    display_name = "Install the HWE kernel"
    ordinal = 2
    reboot_hint = False

    def _package(self, ctx: "StepContext") -> Optional[str]:
        release = hostinfo.ubuntu_version(ctx.host_root)
        if release not in SUPPORTED_RELEASES:
            return None
        return hwe_package(release)

    def run(self, ctx: "StepContext") -> None:
        pkg = self._package(ctx)
        if pkg is None:
            raise InstallerError(
                f"Unsupported OS release; supported Ubuntu releases: {', '.join(SUPPORTED_RELEASES)}"
            )

        if package_installed(ctx.runner, pkg):
            if ctx.prompter.confirm(f"{pkg} is already installed. Skip this step?", default=True):
                logger.info("%s already installed; skipped", pkg)
                return

        apt_update(ctx.runner)
        apt_install(ctx.runner, [pkg])
        ctx.prompter.notify(f"{pkg} installed. It becomes active after the next reboot.")

    def verify(self, ctx: "StepContext") -> VerificationResult:
        pkg = self._package(ctx)
        return VerificationResult(
            [
                check("supported release", pkg is not None),
                check("HWE package installed", bool(pkg) and package_installed(ctx.runner, pkg or ""), pkg or ""),
                check("running kernel", True, hostinfo.kernel_release()),
            ]
        )
