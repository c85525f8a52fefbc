from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, List

from ..errors import ValidationError
from ..identity import capture_slot
from ..lib import hostinfo
from ..partition import PartitionPlan, partition
from ..prompts import ask_validated, positive_int
from ..verify import VerificationResult, check

if TYPE_CHECKING:
    from ..context import StepContext

logger = logging.getLogger(__name__)

MAX_VMS = 3
# Headroom left to the host when suggesting totals.
HOST_RESERVED_CPUS = 4
HOST_RESERVED_MEMORY_MB = 12 * 1024


def _vm_count(text: str) -> int:
    value = positive_int(text)
    if value > MAX_VMS:
        raise ValidationError(f"At most {MAX_VMS} VMs are supported (got {value})")
    return value


def assign_capture_ports(vm_ids: List[str], port_count: int) -> Dict[str, List[int]]:
    """Round-robin capture port slots (1-based) over the VMs in declaration order."""

    owned: Dict[str, List[int]] = {vm: [] for vm in vm_ids}
    for n in range(1, port_count + 1):
        owned[vm_ids[(n - 1) % len(vm_ids)]].append(n)
    return owned


class HwDetectStep:
    step_id = "01_hw_detect"
    display_name = "Hardware detection, NIC and resource selection"
    ordinal = 1
    reboot_hint = False

    def _selection_complete(self, ctx: "StepContext") -> bool:
        cfg = ctx.config
        if not (ctx.resolver.is_recorded("uplink") and ctx.resolver.is_recorded("management")):
            return False
        if cfg.get_int("vcpus_per_vm") is None:
            return False
        return all(cfg.get_str(f"cpuset_{vm}") for vm in cfg.vm_ids())

    def run(self, ctx: "StepContext") -> None:
        if self._selection_complete(ctx) and ctx.prompter.confirm(
            "A complete NIC and resource selection already exists. Reuse it?", default=True
        ):
            logger.info("Reusing previous hardware selection")
            return
        self._select_nics(ctx)
        self._select_resources(ctx)

    def _select_nics(self, ctx: "StepContext") -> None:
        described = ctx.resolver.sysnet.describe()
        names = list(described)
        if len(names) < 2:
            raise ValidationError(f"At least two physical NICs are required, found: {names or 'none'}")

        ctx.prompter.notify(
            "Detected NICs:\n"
            + "\n".join(f"  {n}  pci={d['pci'] or '-'}  mac={d['mac'] or '-'}" for n, d in described.items())
        )

        cfg = ctx.config
        uplink = ctx.prompter.choose("Select the uplink NIC", names, default=cfg.get_str("nic_uplink_name") or None)
        ctx.resolver.record("uplink", uplink)

        rest = [n for n in names if n != uplink]
        management = ctx.prompter.choose(
            "Select the management NIC", rest, default=cfg.get_str("nic_management_name") or None
        )
        ctx.resolver.record("management", management)

        rest = [n for n in rest if n != management]
        previous = [cfg.get_str(f"nic_{capture_slot(i)}_name") for i in range(1, cfg.get_int("capture_port_count", 0) + 1)]
        captures = ctx.prompter.choose_many(
            "Select capture ports", rest, default=[p for p in previous if p in rest]
        ) if rest else []
        for i, name in enumerate(captures, start=1):
            ctx.resolver.record(capture_slot(i), name)
        cfg.set("capture_port_count", len(captures))
        logger.info("NIC selection: uplink=%s management=%s capture=%s", uplink, management, captures)

    def _ask_plan(self, ctx: "StepContext", vm_count: int) -> PartitionPlan:
        cfg = ctx.config
        topo = ctx.topology_reader.read()
        mem_total = hostinfo.memory_total_mb(ctx.host_root) or 0
        vg_free = ctx.volumes.vg_free_gb()

        cpu_default = cfg.get_int("total_vcpus") or max(vm_count, topo.total_logical_cpus - HOST_RESERVED_CPUS)
        mem_default = cfg.get_int("total_memory_mb") or max(1024 * vm_count, mem_total - HOST_RESERVED_MEMORY_MB)
        disk_default = cfg.get_int("total_disk_gb") or vg_free or 100 * vm_count

        last_error = None
        for _ in range(3):
            total_vcpu = ask_validated(ctx.prompter, "Total vCPUs for all VMs", positive_int, default=str(cpu_default))
            total_mem = ask_validated(ctx.prompter, "Total memory (MB) for all VMs", positive_int, default=str(mem_default))
            total_disk = ask_validated(ctx.prompter, "Total disk (GB) for all VMs", positive_int, default=str(disk_default))
            if vg_free is not None and total_disk > vg_free:
                last_error = ValidationError(f"{total_disk} GB requested but volume group has {vg_free} GB free")
                ctx.prompter.notify(str(last_error))
                continue
            try:
                plan = partition(total_vcpu, total_mem, total_disk, vm_count, topo, cfg.vm_ids())
            except ValidationError as e:
                last_error = e
                ctx.prompter.notify(str(e))
                continue
            cfg.update({"total_vcpus": total_vcpu, "total_memory_mb": total_mem, "total_disk_gb": total_disk})
            return plan
        raise last_error or ValidationError("No valid resource budget entered")

    def _select_resources(self, ctx: "StepContext") -> None:
        cfg = ctx.config
        vm_count = ask_validated(ctx.prompter, f"Number of VMs (1-{MAX_VMS})", _vm_count, default=str(cfg.get_int("vm_count", 2)))
        cfg.set("vm_count", vm_count)

        plan = self._ask_plan(ctx, vm_count)
        first = plan.allocations[0]
        updates: Dict[str, object] = {
            "vcpus_per_vm": first.vcpu_count,
            "memory_mb_per_vm": first.memory_mb,
            "disk_gb_per_vm": first.disk_gb,
        }
        for a in plan.allocations:
            updates[f"cpuset_{a.vm_id}"] = a.cpuset
        owned = assign_capture_ports(cfg.vm_ids(), cfg.get_int("capture_port_count", 0))
        for vm, slots in owned.items():
            updates[f"capture_ports_{vm}"] = " ".join(str(n) for n in slots)
        cfg.update(updates)

        lines = [f"  {a.vm_id}: {a.vcpu_count} vCPU (cpuset {a.cpuset}), {a.memory_mb} MB, {a.disk_gb} GB" for a in plan.allocations]
        if plan.remainder_vcpu or plan.remainder_memory_mb or plan.remainder_disk_gb:
            lines.append(
                f"  unallocated: {plan.remainder_vcpu} vCPU, {plan.remainder_memory_mb} MB, {plan.remainder_disk_gb} GB"
            )
        lines.extend(f"  warning: {w}" for w in plan.warnings)
        ctx.prompter.notify("Resource allocation:\n" + "\n".join(lines))

    def verify(self, ctx: "StepContext") -> VerificationResult:
        cfg = ctx.config
        checks = [
            check("uplink recorded", ctx.resolver.is_recorded("uplink"), cfg.get_str("nic_uplink_name")),
            check("management recorded", ctx.resolver.is_recorded("management"), cfg.get_str("nic_management_name")),
        ]
        for vm in cfg.vm_ids():
            checks.append(check(f"{vm} cpuset", bool(cfg.get_str(f"cpuset_{vm}")), cfg.get_str(f"cpuset_{vm}")))
        return VerificationResult(checks)
