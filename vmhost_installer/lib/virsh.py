from __future__ import annotations

import logging
import re
import time
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..errors import ValidationError
from ..verify import poll
from .command import CommandRunner

logger = logging.getLogger(__name__)

_PCI_RE = re.compile(r"^([0-9a-fA-F]{4}):([0-9a-fA-F]{2}):([0-9a-fA-F]{2})\.([0-7])$")


def hostdev_xml(pci_address: str) -> str:
    m = _PCI_RE.match(pci_address)
    if not m:
        raise ValidationError(f"PCI address is malformed: {pci_address}")
    domain, bus, slot, function = m.groups()
    return (
        "<hostdev mode='subsystem' type='pci' managed='yes'>\n"
        "  <source>\n"
        f"    <address domain='0x{domain}' bus='0x{bus}' slot='0x{slot}' function='0x{function}'/>\n"
        "  </source>\n"
        "</hostdev>\n"
    )


def _hex(value: Optional[str], width: int) -> str:
    return f"{int(value or '0', 16):0{width}x}"


def parse_hostdev_addresses(domain_xml: str) -> List[str]:
    """PCI addresses of every passthrough hostdev in a domain definition."""

    if not domain_xml.strip():
        return []
    root = ET.fromstring(domain_xml)
    out: List[str] = []
    for hostdev in root.iter("hostdev"):
        if hostdev.get("type") != "pci":
            continue
        addr = hostdev.find("source/address")
        if addr is None:
            continue
        out.append(
            f"{_hex(addr.get('domain'), 4)}:{_hex(addr.get('bus'), 2)}:"
            f"{_hex(addr.get('slot'), 2)}.{_hex(addr.get('function'), 1)}"
        )
    return out


def parse_vcpupin(output: str) -> Dict[int, str]:
    """Parse `virsh vcpupin DOMAIN` output into vCPU -> affinity."""

    pins: Dict[int, str] = {}
    for line in output.splitlines():
        parts = line.replace(":", " ").split()
        if len(parts) >= 2 and parts[0].isdigit():
            pins[int(parts[0])] = parts[1]
    return pins


class Hypervisor:
    """libvirt control through the virsh CLI.

    Queries use probe() and therefore see the real host in simulation mode;
    mutations go through run() and are only logged in simulation mode.
    """

    def __init__(
        self,
        runner: CommandRunner,
        *,
        work_dir: str,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.runner = runner
        self.work_dir = work_dir
        self.sleep = sleep

    # Queries

    def domain_exists(self, name: str) -> bool:
        return self.runner.probe(["virsh", "dominfo", name]).ok

    def is_running(self, name: str) -> bool:
        r = self.runner.probe(["virsh", "list", "--name"])
        return r.ok and name in {ln.strip() for ln in r.stdout.splitlines()}

    def domain_state(self, name: str) -> str:
        r = self.runner.probe(["virsh", "domstate", name])
        return r.stdout.strip() if r.ok else "unknown"

    def max_vcpus(self, name: str) -> Optional[int]:
        r = self.runner.probe(["virsh", "vcpucount", name, "--maximum", "--config"])
        text = r.stdout.strip()
        if not r.ok or not text.isdigit():
            return None
        return int(text)

    def hostdev_addresses(self, name: str) -> List[str]:
        r = self.runner.probe(["virsh", "dumpxml", name])
        if not r.ok:
            return []
        try:
            return parse_hostdev_addresses(r.stdout)
        except ET.ParseError:
            logger.warning("Could not parse domain XML of %s", name)
            return []

    def vcpu_pins(self, name: str) -> Dict[int, str]:
        r = self.runner.probe(["virsh", "vcpupin", name, "--config"])
        return parse_vcpupin(r.stdout) if r.ok else {}

    def network_active(self, network: str) -> bool:
        r = self.runner.probe(["virsh", "net-info", network])
        if not r.ok:
            return False
        for line in r.stdout.splitlines():
            if line.strip().lower().startswith("active:"):
                return line.split(":", 1)[1].strip().lower() == "yes"
        return False

    def network_defined(self, network: str) -> bool:
        return self.runner.probe(["virsh", "net-info", network]).ok

    # Mutations

    def attach_pci(self, name: str, pci_address: str, *, live: bool = True) -> bool:
        """Attach a PCI device unless it is already attached. Returns True when attached now."""

        if pci_address.lower() in {a.lower() for a in self.hostdev_addresses(name)}:
            logger.info("%s: PCI device %s is already attached", name, pci_address)
            return False
        xml_path = str(Path(self.work_dir) / f"pci_{name}_{pci_address.replace(':', '_')}.xml")
        self.runner.write_file(xml_path, hostdev_xml(pci_address))
        argv = ["virsh", "attach-device", name, xml_path, "--config"]
        if live:
            argv.append("--live")
        self.runner.run(argv)
        logger.info("%s: attached PCI device %s", name, pci_address)
        return True

    def pin_cpus(self, name: str, cpuset: str, vcpu_count: int) -> int:
        """Pin the emulator and every vCPU to `cpuset`. Returns the number of vCPUs pinned.

        The count is min(requested, maximum reported for the defined domain).
        """

        actual = self.max_vcpus(name)
        count = vcpu_count
        if actual is not None and actual < vcpu_count:
            logger.warning("%s: domain allows %d vCPUs, fewer than the %d allocated; pinning %d", name, actual, vcpu_count, actual)
            count = actual
        self.runner.run(["virsh", "emulatorpin", name, cpuset, "--config"])
        for i in range(count):
            self.runner.run(["virsh", "vcpupin", name, str(i), cpuset, "--config"])
        logger.info("%s: emulator and %d vCPU(s) pinned to %s", name, count, cpuset)
        return count

    def safe_restart(self, name: str, *, timeout_s: float = 120, interval_s: float = 2) -> None:
        """Shutdown, wait a bounded time, force-stop on timeout, then start."""

        if self.runner.dry_run:
            logger.info("[DRY-RUN] %s: safe restart skipped", name)
            return

        if self.is_running(name):
            logger.info("%s: running, requesting shutdown", name)
            self.runner.run(["virsh", "shutdown", name], check=False)
            attempts = max(1, int(timeout_s // interval_s))
            stopped = poll(lambda: not self.is_running(name), attempts=attempts, interval_s=interval_s, sleep=self.sleep)
            if not stopped:
                logger.warning("%s: shutdown timed out after %ss, forcing stop", name, timeout_s)
                self.runner.run(["virsh", "destroy", name], check=False)
        else:
            logger.info("%s: already powered off", name)

        self.runner.run(["virsh", "start", name])
        logger.info("%s: restarted", name)

    def ensure_network_started(self, network: str = "default") -> None:
        if not self.network_defined(network):
            xml = f"/usr/share/libvirt/networks/{network}.xml"
            self.runner.run(["virsh", "net-define", xml])
        if not self.network_active(network):
            self.runner.run(["virsh", "net-start", network])
        self.runner.run(["virsh", "net-autostart", network])

    def remove_network(self, network: str = "default") -> None:
        if not self.network_defined(network):
            logger.info("libvirt network %s is not defined", network)
            return
        if self.network_active(network):
            self.runner.run(["virsh", "net-destroy", network])
        self.runner.run(["virsh", "net-autostart", network, "--disable"], check=False)
        self.runner.run(["virsh", "net-undefine", network])

    def undefine(self, name: str, *, remove_nvram: bool = True) -> None:
        if not self.domain_exists(name):
            return
        if self.is_running(name):
            self.runner.run(["virsh", "destroy", name], check=False)
        argv: List[str] = ["virsh", "undefine", name]
        if remove_nvram:
            argv.append("--nvram")
        self.runner.run(argv)
