from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List

from ..identity import capture_slot
from ..lib.pkg import ensure_packages
from ..verify import VerificationResult, check

if TYPE_CHECKING:
    from ..context import StepContext

logger = logging.getLogger(__name__)

UDEV_RULES = "/etc/udev/rules.d/99-vmhost-net.rules"
INTERFACES = "/etc/network/interfaces"
MGMT_BRIDGE = "br-mgmt"


def target_name(slot: str) -> str:
    """Stable OS name given to the NIC in `slot` after the reboot."""

    if slot == "uplink":
        return "uplink"
    if slot == "management":
        return "mgmt"
    return "cap" + slot[len("capture"):]


def udev_rule(target: str, *, pci: str = "", mac: str = "") -> str:
    if pci:
        return f'ACTION=="add", SUBSYSTEM=="net", KERNELS=="{pci}", NAME:="{target}"'
    return f'ACTION=="add", SUBSYSTEM=="net", ATTR{{address}}=="{mac}", NAME:="{target}"'


def render_interfaces(net_mode: str, capture_targets: List[str]) -> str:
    lines = [
        "# Generated by vmhost-installer",
        "auto lo",
        "iface lo inet loopback",
        "",
        "auto uplink",
        "iface uplink inet dhcp",
        "",
    ]
    if net_mode == "bridge":
        lines += [
            "auto mgmt",
            "iface mgmt inet manual",
            "",
            f"auto {MGMT_BRIDGE}",
            f"iface {MGMT_BRIDGE} inet manual",
            "    bridge_ports mgmt",
            "    bridge_stp off",
            "    bridge_fd 0",
            "",
        ]
    else:
        lines += ["auto mgmt", "iface mgmt inet manual", ""]
    for name in capture_targets:
        lines += [
            f"auto {name}",
            f"iface {name} inet manual",
            f"    up ip link set {name} promisc on",
            "",
        ]
    return "\n".join(lines)


class NicNamingStep:
    step_id = "03_nic_naming"
    display_name = "Persistent NIC naming and host network configuration"
    ordinal = 3
    reboot_hint = True

    def _slots(self, ctx: "StepContext") -> List[str]:
        count = ctx.config.get_int("capture_port_count", 0) or 0
        return ["uplink", "management"] + [capture_slot(i) for i in range(1, count + 1)]

    def _rules(self, ctx: "StepContext") -> Dict[str, str]:
        rules: Dict[str, str] = {}
        for slot in self._slots(ctx):
            ctx.resolver.resolve_slot(slot, step_id=self.step_id)
            ident = ctx.resolver.identity_for(slot)
            rules[slot] = udev_rule(
                target_name(slot),
                pci=ident.bus_address or "",
                mac=ident.hardware_address or "",
            )
        return rules

    def run(self, ctx: "StepContext") -> None:
        rules = self._rules(ctx)
        rules_text = "# Generated by vmhost-installer\n" + "\n".join(rules.values()) + "\n"
        captures = [target_name(s) for s in self._slots(ctx) if s.startswith("capture")]
        interfaces_text = render_interfaces(ctx.config.get_str("net_mode", "bridge"), captures)

        ensure_packages(ctx.runner, ["ifupdown", "bridge-utils"])

        changed = ctx.runner.ensure_file(ctx.host_path(UDEV_RULES), rules_text)
        changed = ctx.runner.ensure_file(ctx.host_path(INTERFACES), interfaces_text) or changed
        if changed:
            ctx.runner.run(["udevadm", "control", "--reload-rules"])
        logger.info("NIC naming %s", "updated" if changed else "already in place")

    def verify(self, ctx: "StepContext") -> VerificationResult:
        path = Path(ctx.host_path(UDEV_RULES))
        text = path.read_text(encoding="utf-8") if path.exists() else ""
        checks = [check("udev rules file", path.exists(), str(path))]
        for slot in self._slots(ctx):
            ident = ctx.resolver.identity_for(slot)
            key = ident.bus_address or ident.hardware_address or ""
            checks.append(check(f"rule for {slot}", bool(key) and key in text, key))
        checks.append(check("interfaces file", Path(ctx.host_path(INTERFACES)).exists()))
        return VerificationResult(checks)
