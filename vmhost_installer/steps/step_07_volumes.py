from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from ..errors import ActionFailure, ValidationError
from ..lib.lvm import VolumeManager, lv_name_for, mount_point_for
from ..verify import VerificationResult, check

if TYPE_CHECKING:
    from ..context import StepContext

logger = logging.getLogger(__name__)


def image_file_name(version: str) -> str:
    return f"appliance-{version}.qcow2"


def image_dir(images_dir: str) -> str:
    return str(Path(images_dir) / "images")


def _mapper_path(vg: str, lv: str) -> str:
    return f"/dev/mapper/{vg.replace('-', '--')}-{lv.replace('-', '--')}"


def _same_device(volumes: VolumeManager, lv: str, source: Optional[str]) -> bool:
    return source in {volumes.lv_path(lv), _mapper_path(volumes.volume_group, lv)}


class VolumesStep:
    step_id = "07_volumes"
    display_name = "VM volumes and appliance image"
    ordinal = 7
    reboot_hint = False

    def _all_present(self, ctx: "StepContext") -> bool:
        images_dir = ctx.config.get_str("images_dir")
        return all(
            ctx.volumes.lv_exists(lv_name_for(vm)) and ctx.volumes.is_mounted(mount_point_for(images_dir, vm))
            for vm in ctx.config.vm_ids()
        )

    def run(self, ctx: "StepContext") -> None:
        cfg = ctx.config
        size_gb = cfg.get_int("disk_gb_per_vm")
        if not size_gb:
            raise ValidationError("No per-VM disk size recorded; run 01_hw_detect first")

        if self._all_present(ctx) and ctx.prompter.confirm(
            "All VM volumes already exist and are mounted. Skip volume setup?", default=True
        ):
            logger.info("Volumes already in place; skipped")
        else:
            self._ensure_volumes(ctx, size_gb)

        self._download_image(ctx)

    def _ensure_volumes(self, ctx: "StepContext", size_gb: int) -> None:
        vms = ctx.config.vm_ids()
        images_dir = ctx.config.get_str("images_dir")
        vol = ctx.volumes

        missing = [vm for vm in vms if not vol.lv_exists(lv_name_for(vm))]
        free = vol.vg_free_gb()
        if missing and free is not None and free < size_gb * len(missing):
            raise ValidationError(
                f"Volume group {vol.volume_group} has {free} GB free; {size_gb * len(missing)} GB needed"
            )

        for vm in vms:
            lv = lv_name_for(vm)
            mount_point = mount_point_for(images_dir, vm)
            if vol.create_lv(lv, size_gb):
                vol.make_filesystem(lv)

            if vol.is_mounted(mount_point):
                source = vol.mounted_source(mount_point)
                if source and not _same_device(vol, lv, source):
                    raise ActionFailure(f"{mount_point} is already mounted from {source}, expected {vol.lv_path(lv)}")
            else:
                vol.mount(lv, mount_point)
            vol.ensure_fstab_entry(lv, mount_point)

    def _download_image(self, ctx: "StepContext") -> None:
        cfg = ctx.config
        url = cfg.get_str("image_repo_url")
        version = cfg.get_str("appliance_version")
        dest_dir = image_dir(cfg.get_str("images_dir"))
        dest = str(Path(dest_dir) / image_file_name(version))

        if Path(dest).exists():
            logger.info("Appliance image already present: %s", dest)
            return
        if not url:
            ctx.prompter.notify(f"No image repository configured; place {image_file_name(version)} in {dest_dir} manually.")
            return

        source = f"{url.rstrip('/')}/{version}/{image_file_name(version)}"
        user = cfg.get_str("image_repo_username")
        password = cfg.get_str("image_repo_password")
        ctx.runner.run(["mkdir", "-p", dest_dir])
        # Credentials go through stdin so they never appear in the command log.
        ctx.runner.run(
            ["curl", "-fSL", "--config", "-", "-o", dest, source],
            input_text=f'user = "{user}:{password}"\n' if user else "",
        )
        logger.info("Downloaded %s", dest)

    def verify(self, ctx: "StepContext") -> VerificationResult:
        images_dir = ctx.config.get_str("images_dir")
        checks = []
        for vm in ctx.config.vm_ids():
            mount_point = mount_point_for(images_dir, vm)
            checks.append(check(f"{vm} LV", ctx.volumes.lv_exists(lv_name_for(vm)), ctx.volumes.lv_path(lv_name_for(vm))))
            checks.append(check(f"{vm} mounted", ctx.volumes.is_mounted(mount_point), mount_point))
        return VerificationResult(checks)
