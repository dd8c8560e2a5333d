"""
Tests for run configuration validation.

Validation never raises for recoverable problems: it returns a corrected copy
plus one warning per correction. Schema-level defects are rejected by
pydantic when the configuration is parsed.
"""

import pytest
from pydantic import ValidationError

from book_engine.models.enums import BalanceDimension, EngineType, WarningCategory
from book_engine.models.schemas import (
    AssignmentConfiguration,
    BalanceConfig,
    BalanceDimensionConfig,
    ObjectiveSetting,
    ObjectiveWeights,
)
from book_engine.services.configuration import (
    enabled_dimensions,
    normalize_objective_weights,
    objective_mix,
    snapshot_weights,
    validate_configuration,
)


def _weights(continuity, geography, team, enabled=(True, True, True)):
    return ObjectiveWeights(
        continuity=ObjectiveSetting(enabled=enabled[0], weight=continuity),
        geography=ObjectiveSetting(enabled=enabled[1], weight=geography),
        teamAlignment=ObjectiveSetting(enabled=enabled[2], weight=team),
    )


class TestObjectiveNormalization:
    """Enabled objective weights always sum to 1."""

    def test_default_weights_are_already_normalized(self):
        mix, changed = normalize_objective_weights(ObjectiveWeights())

        assert not changed
        assert mix.continuity == pytest.approx(0.35)
        assert mix.geography == pytest.approx(0.35)
        assert mix.team_alignment == pytest.approx(0.30)

    def test_weights_are_scaled_to_one(self):
        mix, changed = normalize_objective_weights(_weights(1, 1, 2))

        assert changed
        assert (mix.continuity, mix.geography, mix.team_alignment) == pytest.approx((0.25, 0.25, 0.5))

    def test_disabled_objective_weighs_zero(self):
        mix, _ = normalize_objective_weights(_weights(0.5, 0.5, 0.9, enabled=(True, True, False)))

        assert mix.team_alignment == 0.0
        assert mix.continuity + mix.geography == pytest.approx(1.0)

    def test_all_zero_enabled_weights_split_equally(self):
        mix, changed = normalize_objective_weights(_weights(0, 0, 0))

        assert changed
        assert mix.continuity == pytest.approx(1 / 3)
        assert mix.team_alignment == pytest.approx(1 / 3)

    def test_all_disabled_raises(self):
        with pytest.raises(ValueError):
            normalize_objective_weights(_weights(1, 1, 1, enabled=(False, False, False)))


class TestValidateConfiguration:
    """Corrections produce warnings and a new frozen copy."""

    def test_defaults_validate_without_warnings(self):
        corrected, warnings = validate_configuration(AssignmentConfiguration())

        assert warnings == []
        assert corrected.engine == EngineType.WATERFALL

    def test_unnormalized_weights_warn(self):
        config = AssignmentConfiguration(objectives=_weights(2, 2, 4))
        corrected, warnings = validate_configuration(config)

        assert [w.category for w in warnings] == [WarningCategory.WEIGHTS_NORMALIZED]
        assert corrected.objectives.teamAlignment.weight == pytest.approx(0.5)
        # The caller's copy is untouched
        assert config.objectives.teamAlignment.weight == 4

    def test_all_disabled_objectives_fall_back_to_defaults(self):
        config = AssignmentConfiguration(objectives=_weights(1, 1, 1, enabled=(False, False, False)))
        corrected, warnings = validate_configuration(config)

        assert warnings[0].category == WarningCategory.CONFIG_CORRECTED
        assert corrected.objectives.continuity.weight == pytest.approx(0.35)
        assert corrected.objectives.continuity.enabled

    def test_variance_above_one_hundred_is_clamped(self):
        corrected, warnings = validate_configuration(AssignmentConfiguration(capacityVariancePercent=250))

        assert corrected.capacityVariancePercent == 100.0
        assert WarningCategory.CONFIG_CORRECTED in [w.category for w in warnings]

    def test_narrow_absolute_variance_is_widened(self):
        balance = BalanceConfig(arr=BalanceDimensionConfig(variance=0.2, absoluteVariance=0.1))
        corrected, warnings = validate_configuration(AssignmentConfiguration(balance=balance))

        assert corrected.balance.arr.absoluteVariance == pytest.approx(0.2)
        assert corrected.balance.arr.variance == pytest.approx(0.2)
        assert len(warnings) == 1

    def test_max_arr_without_hard_cap_is_noted(self):
        _, warnings = validate_configuration(AssignmentConfiguration(maxArrPerRep=1_000_000))

        assert len(warnings) == 1
        assert "hardCapEnabled" in warnings[0].message

    def test_configuration_is_frozen(self):
        config = AssignmentConfiguration()
        with pytest.raises(ValidationError):
            config.capacityVariancePercent = 50


class TestSchemaRejections:
    """Defects pydantic rejects before validation runs."""

    @pytest.mark.parametrize("payload", [
        {"engine": "simulated-annealing"},
        {"scope": "partners"},
        {"capacityVariancePercent": -1},
        {"objectives": {"continuity": {"weight": -0.5}}},
        {"balance": {"arr": {"penalty": 1.5}}},
        {"solverTimeoutSeconds": 0},
    ])
    def test_invalid_payload_is_rejected(self, payload):
        with pytest.raises(ValidationError):
            AssignmentConfiguration.model_validate(payload)

    def test_empty_payload_is_valid(self):
        config = AssignmentConfiguration.model_validate({})
        assert config.solverTimeoutSeconds == 60.0


class TestDerivedViews:

    def test_enabled_dimensions_default(self):
        assert enabled_dimensions(AssignmentConfiguration()) == [
            BalanceDimension.ARR,
            BalanceDimension.ATR,
            BalanceDimension.PIPELINE,
        ]

    def test_renewal_concentration_enables_four_quarters(self):
        balance = BalanceConfig(renewalConcentration=BalanceDimensionConfig(enabled=True))
        dimensions = enabled_dimensions(AssignmentConfiguration(balance=balance))

        assert BalanceDimension.RENEWAL_Q1 in dimensions
        assert BalanceDimension.RENEWAL_Q4 in dimensions
        assert len(dimensions) == 7

    def test_objective_mix_uses_prospect_weights(self):
        config = AssignmentConfiguration()

        assert objective_mix(config, is_customer=False).geography == pytest.approx(0.45)
        assert objective_mix(config, is_customer=True).geography == pytest.approx(0.35)

    def test_snapshot_weights(self):
        snapshot = snapshot_weights(AssignmentConfiguration())

        assert snapshot.prospectTeamAlignment == pytest.approx(0.35)
        assert snapshot.balancePenalties == {"arr": 0.5, "atr": 0.3, "pipeline": 0.4}
        assert snapshot.intensityMultiplier == 1.0
