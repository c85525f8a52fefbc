from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import FrozenSet

from .config_store import ConfigRecord
from .errors import InstallerError, RebootRequired
from .lib.command import CommandRunner
from .prompts import Prompter
from .state_store import StepStateStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RebootPolicy:
    enabled: bool
    step_ids: FrozenSet[str]

    @classmethod
    def from_config(cls, config: ConfigRecord) -> "RebootPolicy":
        return cls(
            enabled=config.get_bool("enable_auto_reboot", True),
            step_ids=frozenset(config.get_list("auto_reboot_after_steps")),
        )


def requires_reboot(step_id: str, policy: RebootPolicy) -> bool:
    return policy.enabled and step_id in policy.step_ids


class RebootCoordinator:
    """Reboots the host after steps that need it.

    The completed step is already persisted when this runs, so the next
    process start resumes with the following step. Nothing waits in-process.
    """

    def __init__(
        self,
        policy: RebootPolicy,
        prompter: Prompter,
        runner: CommandRunner,
        state_store: StepStateStore,
    ) -> None:
        self.policy = policy
        self.prompter = prompter
        self.runner = runner
        self.state_store = state_store

    def after_step(self, step_id: str) -> bool:
        """Return False when no reboot happens. Raises RebootRequired once a reboot is issued."""

        if not requires_reboot(step_id, self.policy):
            return False

        persisted = self.state_store.load().last_completed_step_id
        if persisted != step_id:
            raise InstallerError(
                f"Refusing to reboot: state file records {persisted!r}, not {step_id!r}",
                step_id=step_id,
            )

        self.prompter.notify(
            f"Step {step_id} is complete and requires a host reboot.\n"
            "After the reboot, start the installer again; it resumes with the next step."
        )

        if self.runner.dry_run:
            logger.info("[DRY-RUN] Auto reboot after %s skipped", step_id)
            return False

        logger.info("Rebooting host after %s", step_id)
        self.runner.run(["sync"], check=False)
        self.runner.run(["reboot"])
        raise RebootRequired(step_id)
