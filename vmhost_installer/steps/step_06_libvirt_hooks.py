from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, List, Sequence

from ..verify import VerificationResult, check

if TYPE_CHECKING:
    from ..context import StepContext

logger = logging.getLogger(__name__)

HOOK_NETWORK = "/etc/libvirt/hooks/network"
HOOK_QEMU = "/etc/libvirt/hooks/qemu"
LKG_SCRIPT = "/usr/local/bin/last_known_good_pid"
WATCHDOG_SCRIPT = "/usr/local/bin/check_vm_state"
CRON_LINE = f"*/5 * * * * /bin/bash {WATCHDOG_SCRIPT} > /dev/null 2>&1"

NETWORK_HOOK = """#!/bin/bash
# libvirt network hook: L2 bridging only, no routing changes.
exit 0
"""

LKG_TEXT = """#!/bin/bash
VM_NAME=$1
RUN_DIR=/var/run/libvirt/qemu

for i in $(seq 1 60); do
    if [ -e "${RUN_DIR}/${VM_NAME}.pid" ]; then
        cp "${RUN_DIR}/${VM_NAME}.pid" "${RUN_DIR}/${VM_NAME}.lkg"
        exit 0
    fi
    sleep 5
done
exit 1
"""


def qemu_hook(vm_ids: Sequence[str]) -> str:
    names = " ".join(vm_ids)
    return f"""#!/bin/bash
# Record the last known good PID of appliance VMs for the OOM watchdog.
for vm in {names}; do
  if [ "${{1}}" = "$vm" ] && {{ [ "${{2}}" = "start" ] || [ "${{2}}" = "reconnect" ]; }}; then
    {LKG_SCRIPT} "${{1}}" > /dev/null 2>&1 &
  fi
done
exit 0
"""


def watchdog_script(vm_ids: Sequence[str]) -> str:
    names = " ".join(vm_ids)
    return f"""#!/bin/bash
# Restart appliance VMs that were killed by the OOM killer.
RUN_DIR=/var/run/libvirt/qemu
for VM in {names}; do
    if [ ! -e "${{RUN_DIR}}/${{VM}}.xml" ] && [ ! -e "${{RUN_DIR}}/${{VM}}.pid" ]; then
        if [ -e "${{RUN_DIR}}/${{VM}}.lkg" ]; then
            LKG_PID=$(cat "${{RUN_DIR}}/${{VM}}.lkg")
            if dmesg | grep -q "Out of memory: Kill.* process ${{LKG_PID}}"; then
                virsh start "${{VM}}"
            fi
        fi
    fi
done
exit 0
"""


def vm_nat_rules(vm_id: str, guest_ip: str, uplink: str, host_port: int) -> List[str]:
    """Per-VM forwarding: SSH on `host_port` of the uplink reaches the guest."""

    return [
        f"-t nat PREROUTING -i {uplink} -p tcp --dport {host_port} -m comment --comment {vm_id} "
        f"-j DNAT --to-destination {guest_ip}:22",
        f"FORWARD -d {guest_ip}/32 -p tcp --dport 22 -m comment --comment {vm_id} -j ACCEPT",
    ]


def with_cron_entry(crontab: str) -> str:
    lines = [ln for ln in crontab.splitlines() if ln.strip()]
    if not any(ln.startswith("SHELL=") for ln in lines):
        lines.insert(0, "SHELL=/bin/bash")
    if not any("check_vm_state" in ln for ln in lines):
        lines.append(CRON_LINE)
    return "\n".join(lines) + "\n"


class LibvirtHooksStep:
    step_id = "06_libvirt_hooks"
    display_name = "libvirt hooks, packet filter and VM watchdog"
    ordinal = 6
    reboot_hint = False

    def run(self, ctx: "StepContext") -> None:
        vms = ctx.config.vm_ids()

        ctx.runner.ensure_file(ctx.host_path(HOOK_NETWORK), NETWORK_HOOK, mode=0o755)
        ctx.runner.ensure_file(ctx.host_path(HOOK_QEMU), qemu_hook(vms), mode=0o755)
        ctx.runner.ensure_file(ctx.host_path(LKG_SCRIPT), LKG_TEXT, mode=0o755)
        ctx.runner.ensure_file(ctx.host_path(WATCHDOG_SCRIPT), watchdog_script(vms), mode=0o755)

        if ctx.config.get_str("net_mode", "bridge") == "nat":
            uplink = ctx.resolver.resolve_slot("uplink", step_id=self.step_id)
            prefix = ctx.config.get_str("nat_subnet_prefix", "192.168.122.")
            for i, vm in enumerate(vms, start=1):
                guest_ip = ctx.config.get_str(f"nat_guest_ip_{vm}") or f"{prefix}{10 + i}"
                ctx.firewall.ensure_rule_set(vm, vm_nat_rules(vm, guest_ip, uplink, 2200 + i))

        self._install_cron(ctx)
        ctx.runner.run(["systemctl", "restart", "libvirtd"])

    def _install_cron(self, ctx: "StepContext") -> None:
        r = ctx.runner.probe(["crontab", "-l"])
        current = r.stdout if r.ok else ""
        desired = with_cron_entry(current)
        if desired == (current if current.endswith("\n") else current + "\n"):
            logger.info("Watchdog cron entry already present")
            return
        tmp = str(Path(ctx.paths.work_dir) / "crontab.new")
        ctx.runner.write_file(tmp, desired)
        ctx.runner.run(["crontab", tmp])

    def verify(self, ctx: "StepContext") -> VerificationResult:
        cron = ctx.runner.probe(["crontab", "-l"])
        return VerificationResult(
            [
                check("network hook", Path(ctx.host_path(HOOK_NETWORK)).exists()),
                check("qemu hook", Path(ctx.host_path(HOOK_QEMU)).exists()),
                check("watchdog script", Path(ctx.host_path(WATCHDOG_SCRIPT)).exists()),
                check("watchdog cron entry", cron.ok and "check_vm_state" in cron.stdout),
            ]
        )
