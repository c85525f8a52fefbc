from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List

from ..errors import ActionFailure, ValidationError
from ..identity import capture_slot
from ..topology import parse_cpu_list
from ..verify import VerificationResult, check

if TYPE_CHECKING:
    from ..context import StepContext

logger = logging.getLogger(__name__)


class PassthroughStep:
    step_id = "09_passthrough"
    display_name = "Capture port passthrough and CPU pinning"
    ordinal = 9
    reboot_hint = False

    def _capture_pcis(self, ctx: "StepContext", vm: str) -> List[str]:
        pcis: List[str] = []
        for n in ctx.config.get_list(f"capture_ports_{vm}"):
            slot = capture_slot(int(n))
            name = ctx.resolver.resolve_slot(slot, step_id=self.step_id)
            pci = ctx.resolver.identity_for(slot).bus_address or ctx.resolver.sysnet.bus_address(name)
            if not pci:
                raise ValidationError(f"{slot} ({name}) has no PCI address and cannot be passed through", step_id=self.step_id)
            pcis.append(pci)
        return pcis

    def _pinned(self, ctx: "StepContext", vm: str, cpuset: str, vcpus: int) -> bool:
        """True when every vCPU that pin_cpus() would pin already runs on `cpuset`.

        vCPUs above the allocated count keep the default affinity and are ignored.
        """

        maximum = ctx.hypervisor.max_vcpus(vm)
        count = min(vcpus, maximum) if maximum else vcpus
        pins = ctx.hypervisor.vcpu_pins(vm)
        wanted = set(parse_cpu_list(cpuset))
        return all(i in pins and set(parse_cpu_list(pins[i])) == wanted for i in range(count))

    def run(self, ctx: "StepContext") -> None:
        cfg = ctx.config
        pci_mode = cfg.get_str("capture_attach_mode", "pci") == "pci"
        vcpus = cfg.get_int("vcpus_per_vm")
        if not vcpus:
            raise ValidationError("No per-VM vCPU count recorded; run 01_hw_detect first")

        for vm in cfg.vm_ids():
            if not ctx.hypervisor.domain_exists(vm):
                if ctx.dry_run:
                    logger.info("[DRY-RUN] %s is not defined; passthrough skipped", vm)
                    continue
                raise ActionFailure(f"{vm} is not defined; run 08_deploy first")

            changed = False
            if pci_mode:
                was_running = ctx.hypervisor.is_running(vm)
                for pci in self._capture_pcis(ctx, vm):
                    changed = ctx.hypervisor.attach_pci(vm, pci, live=was_running) or changed
            else:
                logger.info("%s: capture ports are bridged; no PCI passthrough", vm)

            cpuset = cfg.get_str(f"cpuset_{vm}")
            if cpuset and not self._pinned(ctx, vm, cpuset, vcpus):
                ctx.hypervisor.pin_cpus(vm, cpuset, vcpus)
                changed = True

            if changed:
                ctx.hypervisor.safe_restart(vm)
            else:
                logger.info("%s: passthrough and pinning already applied", vm)

    def verify(self, ctx: "StepContext") -> VerificationResult:
        checks = []
        for vm in ctx.config.vm_ids():
            if not ctx.hypervisor.domain_exists(vm):
                checks.append(check(f"{vm} defined", False))
                continue
            expected = len(ctx.config.get_list(f"capture_ports_{vm}"))
            count = len(ctx.hypervisor.hostdev_addresses(vm))
            checks.append(check(f"{vm} PCI hostdevs", count >= expected, f"{count}/{expected}"))
            cpuset = ctx.config.get_str(f"cpuset_{vm}")
            if cpuset:
                vcpus = max(ctx.config.get_int("vcpus_per_vm"), 1)
                checks.append(check(f"{vm} pinned", self._pinned(ctx, vm, cpuset, vcpus), cpuset))
        return VerificationResult(checks)
