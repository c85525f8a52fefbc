"""
Device identity resolution.

The OS renames NICs (udev rules applied after a reboot, enumeration order
changes), so an interface name recorded in step 01 may not exist by step 09.
Each NIC role is therefore recorded with its hardware identity as well.

Resolution order
1) last known name, if that interface is live right now (fast path)
2) PCI bus address, the most durable identity since it is tied to the slot
3) hardware (MAC) address
4) DeviceNotFound, never an empty name and never a guess
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .config_store import ConfigRecord
from .errors import DeviceNotFound, ValidationError
from .lib.sysnet import SysNet, normalize_mac

logger = logging.getLogger(__name__)


class DeviceRole(str, Enum):
    uplink = "uplink"
    management = "management"
    capture = "capture"


_SLOT_RE = re.compile(r"^(uplink|management|capture)(\d*)$")


@dataclass(frozen=True)
class DeviceIdentity:
    role: DeviceRole
    index: Optional[int] = None
    bus_address: Optional[str] = None
    hardware_address: Optional[str] = None
    last_known_name: Optional[str] = None

    @property
    def slot(self) -> str:
        if self.role == DeviceRole.capture:
            return f"capture{self.index}"
        return self.role.value

    def __str__(self) -> str:
        return (
            f"{self.slot}(name={self.last_known_name or '-'}, "
            f"pci={self.bus_address or '-'}, mac={self.hardware_address or '-'})"
        )


def parse_slot(slot: str) -> tuple[DeviceRole, Optional[int]]:
    m = _SLOT_RE.match(slot)
    if not m:
        raise ValidationError(f"Unknown NIC slot: {slot}")
    role = DeviceRole(m.group(1))
    if role == DeviceRole.capture:
        if not m.group(2):
            raise ValidationError("Capture slots need an index, e.g. capture1")
        return role, int(m.group(2))
    return role, None


def capture_slot(index: int) -> str:
    return f"capture{index}"


class IdentityResolver:
    def __init__(self, config: ConfigRecord, sysnet: Optional[SysNet] = None) -> None:
        self.config = config
        self.sysnet = sysnet or SysNet()

    def _key(self, slot: str, field: str) -> str:
        return f"nic_{slot}_{field}"

    def identity_for(self, slot: str) -> DeviceIdentity:
        role, index = parse_slot(slot)
        mac = self.config.get_str(self._key(slot, "mac"))
        return DeviceIdentity(
            role=role,
            index=index,
            bus_address=self.config.get_str(self._key(slot, "pci")) or None,
            hardware_address=normalize_mac(mac) if mac else None,
            last_known_name=self.config.get_str(self._key(slot, "name")) or None,
        )

    def is_recorded(self, slot: str) -> bool:
        ident = self.identity_for(slot)
        return bool(ident.last_known_name or ident.bus_address or ident.hardware_address)

    def record(self, slot: str, name: str) -> DeviceIdentity:
        """Capture the hardware identity of an operator-selected live interface."""

        if not self.sysnet.is_live(name):
            raise ValidationError(f"Interface {name} does not exist")
        role, index = parse_slot(slot)
        ident = DeviceIdentity(
            role=role,
            index=index,
            bus_address=self.sysnet.bus_address(name),
            hardware_address=self.sysnet.hardware_address(name),
            last_known_name=name,
        )
        if not ident.bus_address:
            logger.warning("%s: %s has no PCI bus address; resolution will rely on MAC", slot, name)
        self.config.update(
            {
                self._key(slot, "name"): name,
                self._key(slot, "pci"): ident.bus_address or "",
                self._key(slot, "mac"): ident.hardware_address or "",
            }
        )
        logger.info("Recorded %s", ident)
        return ident

    def _match(self, identity: DeviceIdentity) -> tuple[Optional[str], str]:
        if identity.last_known_name and self.sysnet.is_live(identity.last_known_name):
            return identity.last_known_name, "last_known_name"

        if identity.bus_address:
            for name in self.sysnet.live_interfaces():
                if self.sysnet.bus_address(name) == identity.bus_address:
                    return name, "bus_address"

        if identity.hardware_address:
            wanted = normalize_mac(identity.hardware_address)
            for name in self.sysnet.live_interfaces():
                if self.sysnet.hardware_address(name) == wanted:
                    return name, "hardware_address"

        return None, ""

    def resolve(self, identity: DeviceIdentity, *, step_id: Optional[str] = None) -> str:
        name, via = self._match(identity)
        if not name:
            raise DeviceNotFound(identity.slot, identity, step_id=step_id)

        updates = {}
        if name != identity.last_known_name:
            logger.info("%s: %s is now %s (matched by %s)", identity.slot, identity.last_known_name, name, via)
            updates[self._key(identity.slot, "name")] = name
        if not identity.bus_address:
            pci = self.sysnet.bus_address(name)
            if pci:
                updates[self._key(identity.slot, "pci")] = pci
        if updates:
            self.config.update(updates)
        return name

    def resolve_slot(self, slot: str, *, step_id: Optional[str] = None) -> str:
        return self.resolve(self.identity_for(slot), step_id=step_id)

    def find_slot(self, slot: str) -> Optional[str]:
        """Current interface name for a slot, leaving the configuration untouched."""

        return self._match(self.identity_for(slot))[0]
