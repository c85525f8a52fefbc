from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from ..lib.pkg import ensure_packages
from ..verify import VerificationResult, check, poll

if TYPE_CHECKING:
    from ..context import StepContext

logger = logging.getLogger(__name__)

PACKAGES = [
    "qemu-kvm",
    "libvirt-daemon-system",
    "libvirt-clients",
    "virtinst",
    "bridge-utils",
    "cpu-checker",
    "ovmf",
]


class KvmLibvirtStep:
    step_id = "04_kvm_libvirt"
    display_name = "Install KVM and libvirt"
    ordinal = 4
    reboot_hint = False

    def run(self, ctx: "StepContext") -> None:
        ensure_packages(ctx.runner, PACKAGES)
        ctx.runner.run(["systemctl", "enable", "--now", "libvirtd"])

        if ctx.config.get_str("net_mode", "bridge") == "nat":
            ctx.hypervisor.ensure_network_started("default")
        else:
            # VMs attach to the management bridge; the NAT network is not used.
            ctx.hypervisor.remove_network("default")

    def _libvirtd_active(self, ctx: "StepContext") -> bool:
        return ctx.runner.probe(["systemctl", "is-active", "libvirtd"]).stdout.strip() == "active"

    def verify(self, ctx: "StepContext") -> VerificationResult:
        active = poll(lambda: self._libvirtd_active(ctx), attempts=5, interval_s=2, sleep=ctx.hypervisor.sleep)
        checks = [
            check("/dev/kvm present", Path(ctx.host_path("/dev/kvm")).exists()),
            check("libvirtd active", active),
        ]
        if ctx.config.get_str("net_mode", "bridge") == "nat":
            checks.append(check("default network active", ctx.hypervisor.network_active("default")))
        return VerificationResult(checks)
