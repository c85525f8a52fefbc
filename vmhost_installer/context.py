from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .config_store import ConfigRecord
from .identity import IdentityResolver
from .lib.command import CommandRunner
from .lib.env import Paths
from .lib.lvm import VolumeManager
from .lib.packet_filter import PacketFilter
from .lib.sysnet import SysNet
from .lib.virsh import Hypervisor
from .prompts import Prompter
from .topology import TopologyReader


@dataclass
class StepContext:
    """Everything a step may touch. Steps get no other handle on the host."""

    config: ConfigRecord
    paths: Paths
    runner: CommandRunner
    prompter: Prompter
    resolver: IdentityResolver
    topology_reader: TopologyReader
    hypervisor: Hypervisor
    volumes: VolumeManager
    firewall: PacketFilter
    host_root: str = "/"

    @property
    def dry_run(self) -> bool:
        return self.runner.dry_run

    def host_path(self, path: str) -> str:
        """Map an absolute host path under `host_root`."""

        return str(Path(self.host_root) / path.lstrip("/"))


def build_context(
    config: ConfigRecord,
    paths: Paths,
    prompter: Prompter,
    *,
    runner: Optional[CommandRunner] = None,
    host_root: str = "/",
    topology_reader: Optional[TopologyReader] = None,
    fstab_path: Optional[str] = None,
) -> StepContext:
    runner = runner or CommandRunner(dry_run=config.dry_run)
    return StepContext(
        config=config,
        paths=paths,
        runner=runner,
        prompter=prompter,
        resolver=IdentityResolver(config, SysNet(host_root)),
        topology_reader=topology_reader or TopologyReader(host_root),
        hypervisor=Hypervisor(runner, work_dir=paths.work_dir),
        volumes=VolumeManager(
            runner,
            volume_group=config.get_str("volume_group", "ubuntu-vg"),
            fstab_path=fstab_path or str(Path(host_root) / "etc/fstab"),
        ),
        firewall=PacketFilter(runner),
        host_root=host_root,
    )
