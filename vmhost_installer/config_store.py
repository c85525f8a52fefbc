from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

from .state_store import load_mapping, save_mapping

logger = logging.getLogger(__name__)


DEFAULTS: Dict[str, Any] = {
    # Simulation mode: commands are logged, never executed.
    "dry_run": True,
    "appliance_version": "6.2.0",
    "image_repo_url": "",
    "image_repo_username": "",
    "image_repo_password": "",
    "enable_auto_reboot": True,
    "auto_reboot_after_steps": "03_nic_naming 05_kernel_tuning",
    # bridge: L2 bridge on the management NIC; nat: libvirt default network.
    "net_mode": "bridge",
    # pci: capture ports are passed through; bridge: virtio NIC on a host bridge.
    "capture_attach_mode": "pci",
    "vm_count": 2,
    "vm_names": "appliance1 appliance2 appliance3",
    "total_vcpus": None,
    "total_memory_mb": None,
    "total_disk_gb": None,
    "vcpus_per_vm": None,
    "memory_mb_per_vm": None,
    "disk_gb_per_vm": None,
    "volume_group": "ubuntu-vg",
    "images_dir": "/var/lib/libvirt/images",
    "deploy_script": "virt_deploy.sh",
    "cli_package_source": "",
    "cli_venv_dir": "/opt/vmhost-cli-venv",
    "cli_module": "appliance_cli",
    "cli_command": "appliance-cli",
    "nat_subnet_prefix": "192.168.122.",
    "nic_uplink_name": "",
    "nic_uplink_pci": "",
    "nic_uplink_mac": "",
    "nic_management_name": "",
    "nic_management_pci": "",
    "nic_management_mac": "",
    "capture_port_count": 0,
}

_TRUE = {"1", "true", "yes", "on", "y"}
_FALSE = {"0", "false", "no", "off", "n", ""}


def ensure_defaults(values: Dict[str, Any]) -> Dict[str, Any]:
    """Fill every known key with its default (without overriding operator values)."""

    for key, value in DEFAULTS.items():
        values.setdefault(key, value)
    return values


class ConfigRecord:
    """Every operator decision, persisted after each mutation.

    Persistence is injected: `persist` receives the full record on every
    set()/update(), so a crash mid-step loses at most the decision in flight.
    """

    def __init__(
        self,
        values: Optional[Mapping[str, Any]] = None,
        *,
        persist: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> None:
        self._values: Dict[str, Any] = ensure_defaults(dict(values or {}))
        self._persist = persist

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def get(self, key: str, default: Any = None) -> Any:
        value = self._values.get(key)
        return default if value is None else value

    def get_str(self, key: str, default: str = "") -> str:
        value = self._values.get(key)
        if value is None:
            return default
        return str(value).strip()

    def get_int(self, key: str, default: Optional[int] = None) -> Optional[int]:
        value = self._values.get(key)
        if value is None or str(value).strip() == "":
            return default
        try:
            return int(str(value).strip())
        except ValueError:
            logger.warning("Config %s=%r is not an integer; using %r", key, value, default)
            return default

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self._values.get(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        return default

    def get_list(self, key: str) -> List[str]:
        value = self._values.get(key)
        if not value:
            return []
        if isinstance(value, (list, tuple)):
            return [str(v) for v in value if str(v).strip()]
        return str(value).split()

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value
        logger.info("Config %s=%s", key, "(hidden)" if "password" in key else value)
        self.save()

    def update(self, values: Mapping[str, Any]) -> None:
        self._values.update(values)
        for key, value in values.items():
            logger.info("Config %s=%s", key, "(hidden)" if "password" in key else value)
        self.save()

    def save(self) -> None:
        if self._persist is not None:
            self._persist(dict(self._values))

    @property
    def dry_run(self) -> bool:
        return self.get_bool("dry_run", True)

    def vm_ids(self) -> List[str]:
        count = self.get_int("vm_count", 2) or 2
        names = self.get_list("vm_names")
        while len(names) < count:
            names.append(f"appliance{len(names) + 1}")
        return names[:count]

    def masked(self) -> Dict[str, Any]:
        out = dict(self._values)
        for key in out:
            if "password" in key and out[key]:
                out[key] = "(configured)"
        return out


def load_config(path: str) -> ConfigRecord:
    values = load_mapping(path)
    return ConfigRecord(values, persist=lambda data: save_mapping(path, data))
