"""
Post-step verification.

Checks are read-only and advisory: a failed check is logged and shown to the
operator but never blocks the pipeline or rolls back state.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Callable, List, Tuple

if TYPE_CHECKING:
    from .context import StepContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Check:
    name: str
    passed: bool
    detail: str = ""


@dataclass(frozen=True)
class VerificationResult:
    checks: List[Check] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(c.passed for c in self.checks)

    def lines(self) -> List[str]:
        out = []
        for c in self.checks:
            mark = "OK  " if c.passed else "WARN"
            out.append(f"[{mark}] {c.name}" + (f": {c.detail}" if c.detail else ""))
        return out

    def summary(self) -> str:
        return "\n".join(self.lines()) or "(no checks)"


def check(name: str, passed: bool, detail: str = "") -> Check:
    return Check(name=name, passed=bool(passed), detail=detail)


def poll(
    condition: Callable[[], bool],
    *,
    attempts: int = 5,
    interval_s: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Evaluate `condition` up to `attempts` times, sleeping a fixed interval in between."""

    for i in range(attempts):
        if condition():
            return True
        if i + 1 < attempts:
            sleep(interval_s)
    return False


def _kernel_section(ctx: "StepContext") -> VerificationResult:
    from .lib import hostinfo

    grub = Path(ctx.host_root) / "etc/default/grub"
    grub_text = grub.read_text(encoding="utf-8") if grub.exists() else ""
    cmdline = hostinfo.kernel_cmdline(ctx.host_root)
    return VerificationResult(
        [
            check("kernel release", True, hostinfo.kernel_release()),
            check("GRUB has IOMMU args", "iommu=pt" in grub_text, str(grub)),
            check("running kernel has IOMMU args", "iommu=pt" in cmdline),
        ]
    )


def _nic_section(ctx: "StepContext") -> VerificationResult:
    checks = []
    slots = ["uplink", "management"] + [f"capture{i}" for i in range(1, ctx.config.get_int("capture_port_count", 0) + 1)]
    for slot in slots:
        if not ctx.resolver.is_recorded(slot):
            checks.append(check(f"NIC {slot}", False, "not selected"))
            continue
        name = ctx.resolver.find_slot(slot)
        if name:
            checks.append(check(f"NIC {slot}", True, name))
        else:
            checks.append(check(f"NIC {slot}", False, f"no live interface matches {ctx.resolver.identity_for(slot)}"))
    return VerificationResult(checks)


def _libvirt_section(ctx: "StepContext") -> VerificationResult:
    kvm = Path(ctx.host_root) / "dev/kvm"
    active = ctx.runner.probe(["systemctl", "is-active", "libvirtd"])
    return VerificationResult(
        [
            check("/dev/kvm present", kvm.exists()),
            check("libvirtd active", active.stdout.strip() == "active", active.stdout.strip()),
        ]
    )


def _vm_section(ctx: "StepContext") -> VerificationResult:
    from .lib.lvm import lv_name_for, mount_point_for

    checks = []
    for vm in ctx.config.vm_ids():
        mount_point = mount_point_for(ctx.config.get_str("images_dir"), vm)
        checks.append(check(f"{vm} LV", ctx.volumes.lv_exists(lv_name_for(vm))))
        checks.append(check(f"{vm} mounted", ctx.volumes.is_mounted(mount_point), mount_point))
        exists = ctx.hypervisor.domain_exists(vm)
        checks.append(check(f"{vm} defined", exists, ctx.hypervisor.domain_state(vm) if exists else ""))
        if exists:
            checks.append(check(f"{vm} PCI hostdevs", True, str(len(ctx.hypervisor.hostdev_addresses(vm)))))
    return VerificationResult(checks)


def _tuning_section(ctx: "StepContext") -> VerificationResult:
    sysctl = Path(ctx.host_root) / "etc/sysctl.d/99-vmhost.conf"
    ksm = Path(ctx.host_root) / "sys/kernel/mm/ksm/run"
    ksm_state = ksm.read_text(encoding="utf-8").strip() if ksm.exists() else ""
    return VerificationResult(
        [
            check("sysctl tuning file", sysctl.exists(), str(sysctl)),
            check("KSM disabled", ksm_state in {"", "0"}, ksm_state or "n/a"),
        ]
    )


def _files_section(ctx: "StepContext") -> VerificationResult:
    return VerificationResult(
        [
            check("config file", Path(ctx.paths.config_file).exists(), ctx.paths.config_file),
            check("state file", Path(ctx.paths.state_file).exists(), ctx.paths.state_file),
        ]
    )


def full_validation_report(ctx: "StepContext") -> List[Tuple[str, VerificationResult]]:
    """Run every read-only host check, regardless of simulation mode."""

    sections = [
        ("Kernel / GRUB", _kernel_section),
        ("Network interfaces", _nic_section),
        ("KVM / libvirt", _libvirt_section),
        ("VMs and storage", _vm_section),
        ("Tuning", _tuning_section),
        ("Installer files", _files_section),
    ]
    report: List[Tuple[str, VerificationResult]] = []
    for title, fn in sections:
        try:
            result = fn(ctx)
        except Exception as e:  # noqa: BLE001
            logger.warning("Validation section %s raised: %s", title, e)
            result = VerificationResult([check(title, False, f"check raised: {e}")])
        report.append((title, result))
        logger.info("Validation %s: %s", title, "OK" if result.ok else "WARN")
    return report


def render_report(report: List[Tuple[str, VerificationResult]]) -> str:
    parts = []
    for title, result in report:
        parts.append(f"== {title} ==")
        parts.append(result.summary())
    return "\n".join(parts)
