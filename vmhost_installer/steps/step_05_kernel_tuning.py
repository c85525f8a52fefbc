from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING

from ..verify import VerificationResult, check

if TYPE_CHECKING:
    from ..context import StepContext

logger = logging.getLogger(__name__)

GRUB_DEFAULT = "/etc/default/grub"
SYSCTL_FILE = "/etc/sysctl.d/99-vmhost.conf"
QEMU_KVM_DEFAULT = "/etc/default/qemu-kvm"
KSM_RUN = "/sys/kernel/mm/ksm/run"
IOMMU_ARGS = "intel_iommu=on iommu=pt"

SYSCTL_TEXT = (
    "# vmhost-installer kernel tuning\n"
    "net.ipv4.ip_forward = 1\n"
    "vm.min_free_kbytes = 1048576\n"
)

_CMDLINE_RE = re.compile(r'^GRUB_CMDLINE_LINUX="(.*)"[ \t]*$', re.MULTILINE)


def with_iommu_args(grub_text: str) -> str:
    """Return `grub_text` with the IOMMU args on GRUB_CMDLINE_LINUX (unchanged if present)."""

    m = _CMDLINE_RE.search(grub_text)
    if m is None:
        sep = "" if not grub_text or grub_text.endswith("\n") else "\n"
        return f'{grub_text}{sep}GRUB_CMDLINE_LINUX="{IOMMU_ARGS}"\n'
    current = m.group(1)
    if IOMMU_ARGS in current:
        return grub_text
    value = f"{IOMMU_ARGS} {current}".strip()
    return grub_text[: m.start()] + f'GRUB_CMDLINE_LINUX="{value}"' + grub_text[m.end() :]


def with_ksm_disabled(text: str) -> str:
    if re.search(r"^KSM_ENABLED=", text, re.MULTILINE):
        return re.sub(r"^KSM_ENABLED=.*$", "KSM_ENABLED=0", text, flags=re.MULTILINE)
    sep = "" if not text or text.endswith("\n") else "\n"
    return f"{text}{sep}KSM_ENABLED=0\n"


def _read(path: str) -> str:
    p = Path(path)
    return p.read_text(encoding="utf-8") if p.exists() else ""


class KernelTuningStep:
    step_id = "05_kernel_tuning"
    display_name = "IOMMU, sysctl and KSM tuning"
    ordinal = 5
    reboot_hint = True

    def run(self, ctx: "StepContext") -> None:
        grub_path = ctx.host_path(GRUB_DEFAULT)
        grub_text = _read(grub_path)
        new_grub = with_iommu_args(grub_text)
        if new_grub != grub_text:
            ctx.runner.write_file(grub_path, new_grub)
            ctx.runner.run(["update-grub"])
        else:
            logger.info("GRUB already carries %s", IOMMU_ARGS)

        if ctx.runner.ensure_file(ctx.host_path(SYSCTL_FILE), SYSCTL_TEXT):
            ctx.runner.run(["sysctl", "--system"])

        qemu_path = ctx.host_path(QEMU_KVM_DEFAULT)
        if Path(qemu_path).exists():
            ctx.runner.ensure_file(qemu_path, with_ksm_disabled(_read(qemu_path)))
        ksm_path = ctx.host_path(KSM_RUN)
        if _read(ksm_path).strip() not in {"", "0"}:
            ctx.runner.write_file(ksm_path, "0\n")

    def verify(self, ctx: "StepContext") -> VerificationResult:
        ksm = _read(ctx.host_path(KSM_RUN)).strip()
        return VerificationResult(
            [
                check("GRUB IOMMU args", IOMMU_ARGS in _read(ctx.host_path(GRUB_DEFAULT))),
                check("sysctl file", _read(ctx.host_path(SYSCTL_FILE)) == SYSCTL_TEXT),
                check("KSM disabled", ksm in {"", "0"}, ksm or "n/a"),
            ]
        )
