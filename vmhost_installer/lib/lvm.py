from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .command import CommandRunner

logger = logging.getLogger(__name__)


class VolumeManager:
    """LVM volumes and their mounts. Every mutation is guarded by an existence check."""

    def __init__(self, runner: CommandRunner, *, volume_group: str, fstab_path: str = "/etc/fstab") -> None:
        self.runner = runner
        self.volume_group = volume_group
        self.fstab_path = fstab_path

    def lv_path(self, lv_name: str) -> str:
        return f"/dev/{self.volume_group}/{lv_name}"

    def lv_exists(self, lv_name: str) -> bool:
        return self.runner.probe(["lvs", f"{self.volume_group}/{lv_name}"]).ok

    def vg_free_gb(self) -> Optional[int]:
        r = self.runner.probe(
            ["vgs", self.volume_group, "--noheadings", "--units", "g", "--nosuffix", "-o", "vg_free"]
        )
        text = r.stdout.strip()
        if not r.ok or not text:
            return None
        try:
            return int(float(text))
        except ValueError:
            return None

    def create_lv(self, lv_name: str, size_gb: int) -> bool:
        if self.lv_exists(lv_name):
            logger.info("LV %s already exists (creation skipped)", self.lv_path(lv_name))
            return False
        self.runner.run(["lvcreate", "-L", f"{size_gb}G", "-n", lv_name, self.volume_group])
        return True

    def make_filesystem(self, lv_name: str, fstype: str = "ext4") -> None:
        self.runner.run([f"mkfs.{fstype}", "-F", self.lv_path(lv_name)])

    def is_mounted(self, mount_point: str) -> bool:
        return self.runner.probe(["mountpoint", "-q", mount_point]).ok

    def mounted_source(self, mount_point: str) -> Optional[str]:
        r = self.runner.probe(["findmnt", "-n", "-o", "SOURCE", mount_point])
        if not r.ok:
            return None
        return r.stdout.strip() or None

    def mount(self, lv_name: str, mount_point: str) -> bool:
        if self.is_mounted(mount_point):
            logger.info("%s is already mounted", mount_point)
            return False
        self.runner.run(["mkdir", "-p", mount_point])
        self.runner.run(["mount", self.lv_path(lv_name), mount_point])
        return True

    def ensure_fstab_entry(self, lv_name: str, mount_point: str, fstype: str = "ext4") -> bool:
        """Append an fstab line for `mount_point` unless one exists. Returns True if appended."""

        p = Path(self.fstab_path)
        existing = p.read_text(encoding="utf-8") if p.exists() else ""
        for line in existing.splitlines():
            fields = line.split()
            if len(fields) >= 2 and not fields[0].startswith("#") and fields[1] == mount_point:
                logger.info("fstab: entry for %s already exists (append skipped)", mount_point)
                return False

        entry = f"{self.lv_path(lv_name)}  {mount_point}  {fstype} defaults,noatime 0 2"
        if self.runner.dry_run:
            logger.info("[DRY-RUN] Would append to %s: %s", self.fstab_path, entry)
            return False
        sep = "" if not existing or existing.endswith("\n") else "\n"
        with p.open("a", encoding="utf-8") as f:
            f.write(f"{sep}{entry}\n")
        logger.info("fstab: appended %s", entry)
        return True


def lv_name_for(vm_id: str) -> str:
    return f"lv_{vm_id}"


def mount_point_for(images_dir: str, vm_id: str) -> str:
    return str(Path(images_dir) / vm_id)
