"""
Tests for the waterfall engine.

Stage tests run against the reference scenario from conftest: with a 176k
ARR max band, A1 and A2 stay with their in-region owners (P1), A3 and A4
move to the in-region rep (P2), and the strategic S1 stays with R3 (P0).
"""

import pytest

from book_engine.models.enums import (
    BalanceDimension,
    ErrorCategory,
    LockType,
    SolverStatus,
    StageLabel,
    WarningCategory,
)
from book_engine.models.schemas import Account, Representative
from book_engine.services.context import Placement
from book_engine.services.waterfall import (
    StageDelta,
    WaterfallState,
    apply_delta,
    run_holdover_stage,
    run_residual_stage,
    run_waterfall,
)


def _placed(outcome):
    return {unit_id: (p.rep_id, p.stage) for unit_id, p in outcome.placements.items()}


class TestSnapshots:
    """Stages never mutate the state they read."""

    def test_apply_delta_returns_new_state_with_loads(self, make_context, base_accounts, base_reps):
        ctx = make_context(base_accounts, base_reps)
        units_by_id = {u.account_id: u for u in ctx.units}
        state = WaterfallState.initial(ctx)
        delta = StageDelta(
            stage=StageLabel.P1_CONTINUITY_GEO,
            placements=(Placement(account_id="A1", rep_id="R1", stage=StageLabel.P1_CONTINUITY_GEO),),
        )

        new_state = apply_delta(state, delta, units_by_id)

        assert new_state.is_placed("A1")
        assert not state.is_placed("A1")
        assert new_state.load("R1", BalanceDimension.ARR) == pytest.approx(120_000)
        assert state.load("R1", BalanceDimension.ARR) == 0.0

    def test_double_placement_is_rejected(self, make_context, base_accounts, base_reps):
        ctx = make_context(base_accounts, base_reps)
        units_by_id = {u.account_id: u for u in ctx.units}
        delta = StageDelta(
            stage=StageLabel.P2_GEOGRAPHY,
            placements=(Placement(account_id="A1", rep_id="R2", stage=StageLabel.P2_GEOGRAPHY),),
        )
        state = apply_delta(WaterfallState.initial(ctx), delta, units_by_id)

        with pytest.raises(ValueError, match="placed twice"):
            apply_delta(state, delta, units_by_id)


class TestHoldover:
    """P0 places locked and strategic units without a solver."""

    def test_strategic_units_spread_by_held_arr(self, make_context):
        reps = [
            Representative(repId="N1"),
            Representative(repId="SA", isStrategic=True),
            Representative(repId="SB", isStrategic=True),
        ]
        accounts = [
            Account(accountId="U1", arr=300, isStrategic=True),
            Account(accountId="U2", ownerId="N1", arr=200, isStrategic=True),
            Account(accountId="U3", ownerId="SB", arr=100, isStrategic=True),
            Account(accountId="N", ownerId="N1", arr=100),
        ]
        ctx = make_context(accounts, reps)

        delta = run_holdover_stage(ctx, WaterfallState.initial(ctx))
        placed = {p.account_id: p.rep_id for p in delta.placements}

        assert placed == {"U3": "SB", "U1": "SA", "U2": "SB"}
        assert delta.failure is None

    def test_strategic_units_skip_rep_with_large_book(self, make_context):
        reps = [
            Representative(repId="N1"),
            Representative(repId="SA", isStrategic=True),
            Representative(repId="SB", isStrategic=True),
        ]
        accounts = [
            Account(accountId="BIG", ownerId="SA", arr=1_000, isStrategic=True),
            Account(accountId="P1", arr=100, isStrategic=True),
            Account(accountId="P2", arr=50, isStrategic=True),
        ]
        ctx = make_context(accounts, reps)

        delta = run_holdover_stage(ctx, WaterfallState.initial(ctx))
        by_id = {p.account_id: p for p in delta.placements}

        assert {a: p.rep_id for a, p in by_id.items()} == {"BIG": "SA", "P1": "SB", "P2": "SB"}
        assert by_id["P1"].note == "Strategic account given to the least-loaded strategic rep"

    def test_lock_past_max_band_is_flagged(self, make_context):
        reps = [Representative(repId="R1"), Representative(repId="R2")]
        accounts = [
            Account(accountId="L1", ownerId="R1", arr=300, manualLock=True),
            Account(accountId="L2", ownerId="R2", arr=100),
        ]
        ctx = make_context(accounts, reps)

        delta = run_holdover_stage(ctx, WaterfallState.initial(ctx))

        assert len(delta.placements) == 1
        placement = delta.placements[0]
        assert placement.is_over_capacity
        assert placement.lock_type == LockType.MANUAL_LOCK
        assert [w.category for w in delta.warnings] == [WarningCategory.CAPACITY_EXCEEDED]

    def test_strategic_units_without_strategic_reps_fail(self, make_context, base_accounts, base_reps):
        ctx = make_context(base_accounts, [r for r in base_reps if not r.isStrategic])

        delta = run_holdover_stage(ctx, WaterfallState.initial(ctx))

        message, category = delta.failure
        assert category == ErrorCategory.DATA_VALIDATION
        assert "strategic" in message


class TestResidual:

    @pytest.mark.solver
    def test_least_loaded_rep_past_capacity(self, make_context):
        reps = [
            Representative(repId="R1", region="North East", teamTier="MM"),
            Representative(repId="R2", region="North East", teamTier="MM"),
        ]
        accounts = [
            Account(accountId="X1", ownerId="R1", arr=300_000, territory="Boston"),
            Account(accountId="X2", ownerId="R1", arr=100_000, territory="Boston"),
            Account(accountId="X3", ownerId="R2", arr=100_000, territory="Boston"),
        ]
        ctx = make_context(accounts, reps)

        outcome = run_waterfall(ctx)
        x1 = outcome.placements["X1"]

        assert outcome.success
        assert _placed(outcome)["X2"] == ("R1", StageLabel.P1_CONTINUITY_GEO)
        assert _placed(outcome)["X3"] == ("R2", StageLabel.P1_CONTINUITY_GEO)
        assert (x1.rep_id, x1.stage) == ("R1", StageLabel.RESIDUAL)
        assert x1.is_over_capacity
        assert x1.forced
        assert WarningCategory.CAPACITY_EXCEEDED in [w.category for w in outcome.warnings]

    def test_nothing_pending(self, make_context, base_accounts, base_reps):
        ctx = make_context(base_accounts, base_reps)
        placements = tuple(
            Placement(account_id=u.account_id, rep_id="R1", stage=StageLabel.P4_BALANCE) for u in ctx.units
        )
        state = apply_delta(
            WaterfallState.initial(ctx),
            StageDelta(stage=StageLabel.P4_BALANCE, placements=placements),
            {u.account_id: u for u in ctx.units},
        )

        assert run_residual_stage(ctx, state).placements == ()

    def test_unit_without_eligible_rep_fails(self, make_context):
        reps = [Representative(repId="RS", isRenewalSpecialist=True)]
        ctx = make_context([Account(accountId="BIG", arr=1_000_000)], reps)

        delta = run_residual_stage(ctx, WaterfallState.initial(ctx))

        assert delta.failure[1] == ErrorCategory.DATA_VALIDATION
        assert "BIG" in delta.failure[0]


@pytest.mark.solver
class TestRunWaterfall:
    """Full cascade through CBC."""

    def test_reference_scenario(self, make_context, base_accounts, base_reps):
        outcome = run_waterfall(make_context(base_accounts, base_reps))

        assert outcome.success
        assert _placed(outcome) == {
            "A1": ("R1", StageLabel.P1_CONTINUITY_GEO),
            "A2": ("R2", StageLabel.P1_CONTINUITY_GEO),
            "A3": ("R2", StageLabel.P2_GEOGRAPHY),
            "A4": ("R1", StageLabel.P2_GEOGRAPHY),
            "S1": ("R3", StageLabel.P0_HOLDOVER),
        }
        assert outcome.solver_status == SolverStatus.OPTIMAL
        assert outcome.num_variables > 0

    def test_manual_lock_changes_the_cascade(self, make_context, base_accounts, base_reps):
        accounts = [
            a.model_copy(update={"manualLock": True}) if a.accountId == "A3" else a
            for a in base_accounts
        ]
        outcome = run_waterfall(make_context(accounts, base_reps))
        placed = _placed(outcome)

        assert placed["A3"] == ("R1", StageLabel.P0_HOLDOVER)
        assert outcome.placements["A3"].lock_type == LockType.MANUAL_LOCK
        assert placed["A1"] == ("R1", StageLabel.P1_CONTINUITY_GEO)
        # R1 is full after the lock, so A4 falls through to balance
        assert placed["A4"] == ("R2", StageLabel.P4_BALANCE)

    def test_backfill_book_migrates(self, make_context, base_accounts, base_reps):
        reps = base_reps + [
            Representative(repId="R4", region="North East", isBackfillSource=True, backfillTargetId="R2")
        ]
        accounts = base_accounts + [Account(accountId="B1", ownerId="R4", arr=10_000, territory="Boston")]

        outcome = run_waterfall(make_context(accounts, reps))
        b1 = outcome.placements["B1"]

        assert (b1.rep_id, b1.stage) == ("R2", StageLabel.P0_HOLDOVER)
        assert b1.lock_type == LockType.BACKFILL_MIGRATION
        assert "R4" not in {p.rep_id for p in outcome.placements.values()}

    def test_owner_across_regions_warns(self, make_context):
        reps = [
            Representative(repId="R1", region="North East"),
            Representative(repId="R2", region="West"),
        ]
        accounts = [
            Account(accountId="W1", ownerId="R1", arr=50_000, territory="Los Angeles"),
            Account(accountId="W2", ownerId="R2", arr=100_000, territory="San Francisco"),
            Account(accountId="W3", ownerId="R2", arr=90_000, territory="San Francisco"),
        ]
        outcome = run_waterfall(make_context(accounts, reps))
        placed = _placed(outcome)
        cross_region = [w for w in outcome.warnings if w.category == WarningCategory.CROSS_REGION]

        assert placed["W2"] == ("R2", StageLabel.P1_CONTINUITY_GEO)
        assert placed["W1"] == ("R1", StageLabel.P3_CONTINUITY)
        assert placed["W3"] == ("R1", StageLabel.RESIDUAL)
        assert [w.accountId for w in cross_region] == ["W1"]
        assert WarningCategory.CONTINUITY_BROKEN in [w.category for w in outcome.warnings]


class TestSolverFailure:
    """Failed sub-problems cascade; the residual stage still places everything."""

    def test_every_stage_falls_through(self, make_context, base_accounts, base_reps, failing_solver):
        outcome = run_waterfall(make_context(base_accounts, base_reps, solver=failing_solver))
        fallbacks = [w for w in outcome.warnings if w.category == WarningCategory.SOLVER_FALLBACK]

        assert outcome.success
        assert _placed(outcome) == {
            "A1": ("R1", StageLabel.RESIDUAL),
            "A2": ("R2", StageLabel.RESIDUAL),
            "A3": ("R2", StageLabel.RESIDUAL),
            "A4": ("R1", StageLabel.RESIDUAL),
            "S1": ("R3", StageLabel.P0_HOLDOVER),
        }
        assert len(fallbacks) == 4
        assert len(failing_solver.programs) == 4
        assert outcome.solver_status == SolverStatus.ERROR

    def test_strategic_failure_is_explicit(self, make_context, base_accounts, base_reps, failing_solver):
        reps = [r for r in base_reps if not r.isStrategic]
        outcome = run_waterfall(make_context(base_accounts, reps, solver=failing_solver))

        assert not outcome.success
        assert outcome.placements == {}
        assert outcome.error_category == ErrorCategory.DATA_VALIDATION
        assert failing_solver.programs == []
