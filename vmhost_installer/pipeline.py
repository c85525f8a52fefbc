from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Protocol, Tuple

from .errors import InstallerError, RebootRequired, UserCancelled, ValidationError
from .logging_utils import current_log_path
from .state_store import StepState, StepStateStore
from .verify import VerificationResult

if TYPE_CHECKING:
    from .context import StepContext
    from .reboot import RebootCoordinator

logger = logging.getLogger(__name__)


class Step(Protocol):
    """A single provisioning step.

    Re-running a completed step must be a no-op or offer to skip once its end
    state is detected. A step may also define verify(ctx) -> VerificationResult.
    """

    step_id: str
    display_name: str
    ordinal: int
    reboot_hint: bool

    def run(self, ctx: "StepContext") -> None:
        ...


class StepOutcome(str, Enum):
    ok = "ok"
    failed = "failed"
    user_cancelled = "user_cancelled"


@dataclass(frozen=True)
class StepRunResult:
    step_id: str
    outcome: StepOutcome
    message: str = ""
    verification: Optional[VerificationResult] = None
    reboot_pending: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome == StepOutcome.ok


class StepRegistry:
    """Fixed, ordinal-ordered set of steps."""

    def __init__(self, steps: Iterable[Step]) -> None:
        items = list(steps)
        seen_ids: Dict[str, Step] = {}
        seen_ordinals: Dict[int, str] = {}
        for step in items:
            if not step.step_id:
                raise ValueError(f"Step {step!r} has no step_id")
            if step.step_id in seen_ids:
                raise ValueError(f"Duplicate step id: {step.step_id}")
            if not isinstance(step.ordinal, int) or step.ordinal < 1:
                raise ValueError(f"Step {step.step_id} has invalid ordinal {step.ordinal!r}")
            if step.ordinal in seen_ordinals:
                raise ValueError(
                    f"Steps {seen_ordinals[step.ordinal]} and {step.step_id} share ordinal {step.ordinal}"
                )
            seen_ids[step.step_id] = step
            seen_ordinals[step.ordinal] = step.step_id
        self._steps: Tuple[Step, ...] = tuple(sorted(items, key=lambda s: s.ordinal))
        self._by_id = seen_ids

    @property
    def steps(self) -> Tuple[Step, ...]:
        return self._steps

    def __len__(self) -> int:
        return len(self._steps)

    def get(self, step_id: str) -> Step:
        try:
            return self._by_id[step_id]
        except KeyError:
            raise ValidationError(f"Unknown step: {step_id}") from None

    def _last_completed(self, state: StepState) -> Optional[Step]:
        last = state.last_completed_step_id
        if not last:
            return None
        step = self._by_id.get(last)
        if step is None:
            logger.warning("State file records unknown step %r; starting from the first step", last)
        return step

    def next_pending(self, state: StepState) -> Optional[Step]:
        last = self._last_completed(state)
        if last is None:
            return self._steps[0] if self._steps else None
        for step in self._steps:
            if step.ordinal > last.ordinal:
                return step
        return None

    def is_completed(self, step: Step, state: StepState) -> bool:
        last = self._by_id.get(state.last_completed_step_id or "")
        return last is not None and step.ordinal <= last.ordinal


class Orchestrator:
    def __init__(
        self,
        registry: StepRegistry,
        ctx: "StepContext",
        state_store: StepStateStore,
        reboot: "RebootCoordinator",
    ) -> None:
        self.registry = registry
        self.ctx = ctx
        self.state_store = state_store
        self.reboot = reboot

    def next_pending_step(self) -> Optional[Step]:
        return self.registry.next_pending(self.state_store.load())

    def _failed(self, step: Step, error: BaseException) -> StepRunResult:
        if isinstance(error, InstallerError) and error.step_id is None:
            error.step_id = step.step_id
        log_path = current_log_path(self.ctx.paths.log_file)
        message = (
            f"Step {step.step_id} ({step.display_name}) failed: {error}\n"
            f"Fix the cause and re-run this step (menu: run a specific step, "
            f"or `vmhost-installer run-step {step.step_id}`). Details: {log_path}"
        )
        logger.error("===== STEP FAILED: %s =====", step.step_id)
        logger.error("%s", message)
        self.ctx.prompter.notify(message)
        return StepRunResult(step.step_id, StepOutcome.failed, message)

    def _cancelled(self, step: Step, reason: str) -> StepRunResult:
        logger.info("Step %s cancelled by operator (%s); state unchanged", step.step_id, reason)
        return StepRunResult(step.step_id, StepOutcome.user_cancelled, reason)

    def _verify(self, step: Step) -> Optional[VerificationResult]:
        verify = getattr(step, "verify", None)
        if verify is None:
            return None
        try:
            result = verify(self.ctx)
        except Exception as e:  # noqa: BLE001
            logger.warning("Verification of %s raised %s: %s", step.step_id, type(e).__name__, e)
            return None
        level = logging.INFO if result.ok else logging.WARNING
        logger.log(level, "Verification of %s:\n%s", step.step_id, result.summary())
        return result

    def run(self, step: Step) -> StepRunResult:
        """Confirm, run, verify, persist, then let the reboot coordinator decide.

        Only success advances the state file. RebootRequired propagates to the caller.
        """

        logger.info("===== STEP START: %s - %s =====", step.step_id, step.display_name)
        try:
            if not self.ctx.prompter.confirm(f"Run step {step.step_id} ({step.display_name})?", default=True):
                return self._cancelled(step, "declined")
            step.run(self.ctx)
        except UserCancelled as e:
            return self._cancelled(step, str(e) or "cancelled")
        except Exception as e:  # noqa: BLE001
            logger.exception("Step %s raised", step.step_id)
            return self._failed(step, e)

        verification = self._verify(step)

        try:
            self.state_store.mark_completed(step.step_id)
        except OSError as e:
            return self._failed(step, e)

        logger.info("===== STEP DONE: %s =====", step.step_id)
        try:
            self.reboot.after_step(step.step_id)
        except RebootRequired:
            raise
        except Exception as e:  # noqa: BLE001
            logger.exception("Reboot after %s failed", step.step_id)
            self.ctx.prompter.notify(
                f"Step {step.step_id} completed, but the automatic reboot failed: {e}\n"
                f"Reboot the host manually, then start the installer again. "
                f"Details: {current_log_path(self.ctx.paths.log_file)}"
            )
            return StepRunResult(step.step_id, StepOutcome.ok, "completed; reboot pending", verification, True)
        return StepRunResult(step.step_id, StepOutcome.ok, "completed", verification)

    def run_step(self, step_id: str) -> StepRunResult:
        return self.run(self.registry.get(step_id))

    def run_next(self) -> Optional[StepRunResult]:
        step = self.next_pending_step()
        if step is None:
            self.ctx.prompter.notify("All steps are complete.")
            return None
        return self.run(step)

    def run_to_completion(self) -> List[StepRunResult]:
        """Run pending steps in order, stopping at the first step that does not succeed
        or that leaves a reboot pending.
        """

        results: List[StepRunResult] = []
        while True:
            step = self.next_pending_step()
            if step is None:
                logger.info("All steps are complete")
                break
            result = self.run(step)
            results.append(result)
            if not result.ok or result.reboot_pending:
                break
        return results

    def status_rows(self) -> List[Dict[str, Any]]:
        state = self.state_store.load()
        pending = self.registry.next_pending(state)
        return [
            {
                "step_id": s.step_id,
                "display_name": s.display_name,
                "completed": self.registry.is_completed(s, state),
                "next": pending is not None and s.step_id == pending.step_id,
            }
            for s in self.registry.steps
        ]
