import pytest

from conftest import FakeRunner, ScriptedPrompter
from vmhost_installer.errors import ActionFailure, RebootRequired, UserCancelled
from vmhost_installer.pipeline import Orchestrator, StepOutcome, StepRegistry
from vmhost_installer.reboot import RebootCoordinator, RebootPolicy
from vmhost_installer.state_store import StepState, StepStateStore
from vmhost_installer.verify import VerificationResult, check


class FakeStep:
    reboot_hint = False

    def __init__(self, ordinal, *, error=None, verify_error=None):
        self.ordinal = ordinal
        self.step_id = f"s{ordinal}"
        self.display_name = f"Step {ordinal}"
        self.error = error
        self.verify_error = verify_error
        self.runs = 0

    def run(self, ctx):
        self.runs += 1
        if self.error is not None:
            raise self.error

    def verify(self, ctx):
        if self.verify_error is not None:
            raise self.verify_error
        return VerificationResult([check("done", False, "advisory only")])


def make_orchestrator(ctx, steps, *, reboot_after=(), runner=None):
    runner = runner or ctx.runner
    ctx.runner = runner
    store = StepStateStore(ctx.paths.state_file)
    policy = RebootPolicy(enabled=True, step_ids=frozenset(reboot_after))
    reboot = RebootCoordinator(policy, ctx.prompter, runner, store)
    return Orchestrator(StepRegistry(steps), ctx, store, reboot)


def test_registry_orders_by_ordinal():
    reg = StepRegistry([FakeStep(3), FakeStep(1), FakeStep(2)])
    assert [s.step_id for s in reg.steps] == ["s1", "s2", "s3"]
    assert reg.next_pending(StepState()).step_id == "s1"
    assert reg.next_pending(StepState("s2")).step_id == "s3"
    assert reg.next_pending(StepState("s3")) is None


def test_registry_rejects_duplicates_and_bad_ordinals():
    twin = FakeStep(2)
    twin.step_id = "s1"
    with pytest.raises(ValueError):
        StepRegistry([FakeStep(1), twin])
    with pytest.raises(ValueError):
        StepRegistry([FakeStep(1), FakeStep(1)])
    with pytest.raises(ValueError):
        StepRegistry([FakeStep(0)])


def test_unknown_recorded_step_restarts_from_first():
    reg = StepRegistry([FakeStep(1), FakeStep(2)])
    assert reg.next_pending(StepState("99_removed")).step_id == "s1"


def test_success_advances_and_survives_a_new_process(ctx):
    steps = [FakeStep(1), FakeStep(2)]
    result = make_orchestrator(ctx, steps).run_next()

    assert result.outcome == StepOutcome.ok
    assert result.verification is not None and not result.verification.ok

    fresh = make_orchestrator(ctx, [FakeStep(1), FakeStep(2)])
    assert fresh.next_pending_step().step_id == "s2"


def test_failure_does_not_advance_and_names_the_step(ctx):
    steps = [FakeStep(1, error=ActionFailure("lvcreate failed")), FakeStep(2)]
    orch = make_orchestrator(ctx, steps)

    result = orch.run_next()

    assert result.outcome == StepOutcome.failed
    assert "s1" in result.message and "run-step" in result.message
    assert ctx.prompter.notices[-1] == result.message
    assert orch.state_store.load().last_completed_step_id is None
    assert orch.next_pending_step().step_id == "s1"


def test_unexpected_exception_is_a_failure(ctx):
    orch = make_orchestrator(ctx, [FakeStep(1, error=KeyError("x"))])
    assert orch.run_next().outcome == StepOutcome.failed


def test_declined_confirmation_leaves_state_unchanged(ctx):
    ctx.prompter = ScriptedPrompter(confirms=[False])
    step = FakeStep(1)
    orch = make_orchestrator(ctx, [step])

    result = orch.run_next()

    assert result.outcome == StepOutcome.user_cancelled
    assert step.runs == 0
    assert orch.state_store.load().last_completed_step_id is None


def test_cancel_inside_step_is_not_a_failure(ctx):
    orch = make_orchestrator(ctx, [FakeStep(1, error=UserCancelled("no"))])
    result = orch.run_next()
    assert result.outcome == StepOutcome.user_cancelled
    assert orch.state_store.load().last_completed_step_id is None


def test_verification_error_does_not_block(ctx):
    orch = make_orchestrator(ctx, [FakeStep(1, verify_error=RuntimeError("probe broke"))])
    result = orch.run_next()
    assert result.ok
    assert result.verification is None


def test_run_to_completion_stops_at_first_failure(ctx):
    steps = [FakeStep(1), FakeStep(2, error=ActionFailure("boom")), FakeStep(3)]
    results = make_orchestrator(ctx, steps).run_to_completion()

    assert [(r.step_id, r.outcome) for r in results] == [
        ("s1", StepOutcome.ok),
        ("s2", StepOutcome.failed),
    ]
    assert steps[2].runs == 0


def test_reboot_step_persists_before_reboot_and_resumes_after(ctx, runner):
    steps = [FakeStep(1), FakeStep(2), FakeStep(3)]
    orch = make_orchestrator(ctx, steps, reboot_after=["s2"])

    with pytest.raises(RebootRequired) as exc:
        orch.run_to_completion()

    assert exc.value.step_id == "s2"
    assert ["reboot"] in runner.calls
    assert orch.state_store.load().last_completed_step_id == "s2"
    assert steps[2].runs == 0

    resumed = make_orchestrator(ctx, [FakeStep(1), FakeStep(2), FakeStep(3)], reboot_after=["s2"])
    assert resumed.next_pending_step().step_id == "s3"


def test_failed_reboot_keeps_the_step_done_and_stops_auto_run(ctx, runner):
    runner.fail_on.add("reboot")
    steps = [FakeStep(1), FakeStep(2)]

    results = make_orchestrator(ctx, steps, reboot_after=["s1"]).run_to_completion()

    assert [(r.step_id, r.ok, r.reboot_pending) for r in results] == [("s1", True, True)]
    assert steps[1].runs == 0
    assert StepStateStore(ctx.paths.state_file).load().last_completed_step_id == "s1"
    assert "Reboot the host manually" in ctx.prompter.notices[-1]
    assert "Details: " in ctx.prompter.notices[-1]


def test_reboot_refused_on_state_mismatch_is_reported_not_raised(ctx, runner, monkeypatch):
    orch = make_orchestrator(ctx, [FakeStep(1)], reboot_after=["s1"])
    monkeypatch.setattr(orch.state_store, "mark_completed", lambda step_id: None)

    result = orch.run_next()

    assert result.ok and result.reboot_pending
    assert ["reboot"] not in runner.calls


def test_simulation_never_reboots(ctx):
    sim = FakeRunner(dry_run=True)
    steps = [FakeStep(1), FakeStep(2), FakeStep(3)]
    results = make_orchestrator(ctx, steps, reboot_after=["s1", "s2"], runner=sim).run_to_completion()

    assert [r.ok for r in results] == [True, True, True]
    assert ["reboot"] not in sim.calls
    assert len(ctx.prompter.notices) == 2


def test_status_rows_mark_done_and_next(ctx):
    orch = make_orchestrator(ctx, [FakeStep(1), FakeStep(2), FakeStep(3)])
    orch.run_next()

    rows = orch.status_rows()
    assert [(r["step_id"], r["completed"], r["next"]) for r in rows] == [
        ("s1", True, False),
        ("s2", False, True),
        ("s3", False, False),
    ]
