from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, List

from ..errors import ActionFailure, ValidationError
from ..lib.lvm import mount_point_for
from ..verify import VerificationResult, check
from .step_03_nic_naming import MGMT_BRIDGE
from .step_07_volumes import image_dir

if TYPE_CHECKING:
    from ..context import StepContext

logger = logging.getLogger(__name__)


def deploy_argv(script: str, vm_id: str, *, version: str, vcpus: int, memory_mb: int, disk_gb: int, installdir: str, bridge: str) -> List[str]:
    return [
        "bash",
        script,
        "--",
        f"--hostname={vm_id}",
        f"--release={version}",
        f"--CPUS={vcpus}",
        f"--MEM={memory_mb}",
        f"--DISKSIZE={disk_gb}",
        f"--installdir={installdir}",
        "--nodownload=true",
        f"--bridge={bridge}",
    ]


class DeployStep:
    step_id = "08_deploy"
    display_name = "Deploy appliance VMs"
    ordinal = 8
    reboot_hint = False

    def run(self, ctx: "StepContext") -> None:
        cfg = ctx.config
        vcpus = cfg.get_int("vcpus_per_vm")
        memory_mb = cfg.get_int("memory_mb_per_vm")
        disk_gb = cfg.get_int("disk_gb_per_vm")
        if not (vcpus and memory_mb and disk_gb):
            raise ValidationError("No per-VM allocation recorded; run 01_hw_detect first")

        scripts = image_dir(cfg.get_str("images_dir"))
        script = str(Path(scripts) / cfg.get_str("deploy_script"))
        if not Path(script).exists() and not ctx.dry_run:
            raise ActionFailure(f"Deployment script not found: {script}")

        vms = cfg.vm_ids()
        existing = [vm for vm in vms if ctx.hypervisor.domain_exists(vm)]
        targets = list(vms)
        if existing:
            choice = ctx.prompter.choose(
                f"Already defined: {', '.join(existing)}. What should happen to them?",
                ["skip", "redeploy"],
                default="skip",
            )
            if choice == "skip":
                targets = [vm for vm in vms if vm not in existing]
            else:
                for vm in existing:
                    logger.info("Removing %s for redeploy", vm)
                    ctx.hypervisor.undefine(vm)

        if not targets:
            logger.info("All VMs already deployed; nothing to do")
            return

        bridge = MGMT_BRIDGE if cfg.get_str("net_mode", "bridge") == "bridge" else "virbr0"
        for vm in targets:
            argv = deploy_argv(
                script,
                vm,
                version=cfg.get_str("appliance_version"),
                vcpus=vcpus,
                memory_mb=memory_mb,
                disk_gb=disk_gb,
                installdir=mount_point_for(cfg.get_str("images_dir"), vm),
                bridge=bridge,
            )
            ctx.runner.run(argv, cwd=scripts if Path(scripts).is_dir() else None)
            logger.info("%s deployed", vm)

    def verify(self, ctx: "StepContext") -> VerificationResult:
        return VerificationResult(
            [check(f"{vm} defined", ctx.hypervisor.domain_exists(vm), ctx.hypervisor.domain_state(vm)) for vm in ctx.config.vm_ids()]
        )
