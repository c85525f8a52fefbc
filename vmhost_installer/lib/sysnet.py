from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

# Virtual and bridge devices are never candidates for a physical NIC role.
_EXCLUDED_PREFIXES = ("lo", "virbr", "vnet", "tap", "docker", "br-", "ovs", "veth", "bond")


def normalize_mac(mac: str) -> str:
    return mac.strip().lower().replace("-", ":")


class SysNet:
    """Read-only view of /sys/class/net.

    `root` is the filesystem root, so tests can point it at a fake tree.
    """

    def __init__(self, root: str = "/") -> None:
        self.root = Path(root)

    @property
    def class_net(self) -> Path:
        return self.root / "sys/class/net"

    def live_interfaces(self) -> List[str]:
        if not self.class_net.exists():
            return []
        return sorted(p.name for p in self.class_net.iterdir())

    def is_live(self, name: str) -> bool:
        return bool(name) and (self.class_net / name).exists()

    def bus_address(self, name: str) -> Optional[str]:
        """PCI address backing an interface, e.g. 0000:03:00.0 (None for virtual NICs)."""

        dev = self.class_net / name / "device"
        if not os.path.lexists(dev):
            return None
        try:
            return Path(os.path.realpath(dev)).name or None
        except OSError:
            return None

    def hardware_address(self, name: str) -> Optional[str]:
        try:
            mac = (self.class_net / name / "address").read_text(encoding="utf-8").strip()
        except OSError:
            return None
        return normalize_mac(mac) if mac else None

    def nic_candidates(self) -> List[str]:
        return [n for n in self.live_interfaces() if not n.startswith(_EXCLUDED_PREFIXES)]

    def describe(self) -> Dict[str, Dict[str, Optional[str]]]:
        return {
            n: {"pci": self.bus_address(n), "mac": self.hardware_address(n)}
            for n in self.nic_candidates()
        }
