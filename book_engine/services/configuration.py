"""
Run Configuration Validation Service

Validates an AssignmentConfiguration once at run start and returns a
corrected copy plus the warnings describing each correction. Engines only ever
see the corrected copy, which is frozen for the rest of the run.

Corrections:
- Objective weights: enabled weights are normalized to sum to 1; all-zero
  enabled weights are split equally; disabled objectives weigh 0. A set with
  every objective disabled is replaced by the defaults.
- Variance bands: capacityVariancePercent above 100 is clamped to 100; a
  dimension whose absoluteVariance is narrower than its variance band has the
  absolute band widened to match.
- Hard cap: maxArrPerRep given while hardCapEnabled is off is kept but noted.

Schema-level defects (negative weights, unknown engine names) never reach this
module: pydantic rejects them when the configuration is parsed.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Tuple

from book_engine.models.enums import BalanceDimension, WarningCategory, WarningSeverity
from book_engine.models.schemas import (
    AssignmentConfiguration,
    AssignmentWarning,
    BalanceConfig,
    ObjectiveSetting,
    ObjectiveWeights,
    WeightsSnapshot,
)
from book_engine.services.diagnostics import record_warning


logger = logging.getLogger(__name__)

WEIGHT_TOLERANCE = 1e-9

# Balance config field name -> dimensions it governs
BALANCE_FIELDS: Dict[str, Tuple[BalanceDimension, ...]] = {
    "arr": (BalanceDimension.ARR,),
    "atr": (BalanceDimension.ATR,),
    "pipeline": (BalanceDimension.PIPELINE,),
    "tier1": (BalanceDimension.TIER_1,),
    "tier2": (BalanceDimension.TIER_2,),
    "riskAccounts": (BalanceDimension.RISK_ACCOUNTS,),
    "renewalConcentration": (
        BalanceDimension.RENEWAL_Q1,
        BalanceDimension.RENEWAL_Q2,
        BalanceDimension.RENEWAL_Q3,
        BalanceDimension.RENEWAL_Q4,
    ),
}


@dataclass(frozen=True)
class ObjectiveMix:
    """Normalized weights of the three scoring objectives (sum to 1)."""
    continuity: float
    geography: float
    team_alignment: float


def normalize_objective_weights(objectives: ObjectiveWeights) -> Tuple[ObjectiveMix, bool]:
    """
    Normalize enabled objective weights to sum to 1.

    Args:
        objectives: Raw objective settings

    Returns:
        (normalized mix, changed) where changed is True when the raw weights
        were not already normalized

    Raises:
        ValueError: If every objective is disabled
    """
    raw = {
        "continuity": objectives.continuity,
        "geography": objectives.geography,
        "teamAlignment": objectives.teamAlignment,
    }
    enabled = {name: setting.weight for name, setting in raw.items() if setting.enabled}
    if not enabled:
        raise ValueError("At least one scoring objective must be enabled")

    total = sum(enabled.values())
    if total <= 0:
        share = 1.0 / len(enabled)
        normalized = {name: share for name in enabled}
    else:
        normalized = {name: weight / total for name, weight in enabled.items()}

    changed = any(
        abs(normalized.get(name, 0.0) - (setting.weight if setting.enabled else 0.0)) > WEIGHT_TOLERANCE
        for name, setting in raw.items()
    )

    mix = ObjectiveMix(
        continuity=normalized.get("continuity", 0.0),
        geography=normalized.get("geography", 0.0),
        team_alignment=normalized.get("teamAlignment", 0.0),
    )
    return mix, changed


def _apply_mix(objectives: ObjectiveWeights, mix: ObjectiveMix) -> ObjectiveWeights:
    return ObjectiveWeights(
        continuity=ObjectiveSetting(enabled=objectives.continuity.enabled, weight=mix.continuity),
        geography=ObjectiveSetting(enabled=objectives.geography.enabled, weight=mix.geography),
        teamAlignment=ObjectiveSetting(
            enabled=objectives.teamAlignment.enabled, weight=mix.team_alignment
        ),
    )


def _validate_objectives(
    label: str,
    objectives: ObjectiveWeights,
    default: ObjectiveWeights,
    warnings: List[AssignmentWarning],
) -> ObjectiveWeights:
    try:
        mix, changed = normalize_objective_weights(objectives)
    except ValueError:
        record_warning(
            warnings,
            WarningCategory.CONFIG_CORRECTED,
            f"All {label} objectives were disabled; using default weights",
            severity=WarningSeverity.HIGH,
        )
        mix, _ = normalize_objective_weights(default)
        return _apply_mix(default, mix)

    if changed:
        record_warning(
            warnings,
            WarningCategory.WEIGHTS_NORMALIZED,
            f"{label.capitalize()} objective weights normalized to "
            f"continuity={mix.continuity:.3f}, geography={mix.geography:.3f}, "
            f"teamAlignment={mix.team_alignment:.3f}",
            severity=WarningSeverity.LOW,
        )
    return _apply_mix(objectives, mix)


def _validate_balance(balance: BalanceConfig, warnings: List[AssignmentWarning]) -> BalanceConfig:
    updates = {}
    for field_name in BALANCE_FIELDS:
        dimension_config = getattr(balance, field_name)
        variance = dimension_config.variance
        if variance is not None and dimension_config.absoluteVariance < variance:
            record_warning(
                warnings,
                WarningCategory.CONFIG_CORRECTED,
                f"Balance '{field_name}' absoluteVariance {dimension_config.absoluteVariance} is "
                f"narrower than its variance {variance}; widened to {variance}",
                severity=WarningSeverity.LOW,
            )
            updates[field_name] = dimension_config.model_copy(update={"absoluteVariance": variance})
    if not updates:
        return balance
    return balance.model_copy(update=updates)


def validate_configuration(
    config: AssignmentConfiguration,
) -> Tuple[AssignmentConfiguration, List[AssignmentWarning]]:
    """
    Validate a run configuration and return a corrected copy.

    Args:
        config: Configuration as supplied by the caller

    Returns:
        (corrected configuration, warnings describing each correction)
    """
    warnings: List[AssignmentWarning] = []
    defaults = AssignmentConfiguration()

    updates = {
        "objectives": _validate_objectives("customer", config.objectives, defaults.objectives, warnings),
        "prospectObjectives": _validate_objectives(
            "prospect", config.prospectObjectives, defaults.prospectObjectives, warnings
        ),
    }

    if config.capacityVariancePercent > 100:
        record_warning(
            warnings,
            WarningCategory.CONFIG_CORRECTED,
            f"capacityVariancePercent {config.capacityVariancePercent} clamped to 100",
            severity=WarningSeverity.MEDIUM,
        )
        updates["capacityVariancePercent"] = 100.0

    balance = _validate_balance(config.balance, warnings)
    if balance is not config.balance:
        updates["balance"] = balance

    if config.maxArrPerRep is not None and not config.hardCapEnabled:
        record_warning(
            warnings,
            WarningCategory.CONFIG_CORRECTED,
            "maxArrPerRep is set but hardCapEnabled is off; the cap will not be enforced",
            severity=WarningSeverity.LOW,
        )

    corrected = config.model_copy(update=updates)
    logger.info(
        f"Validated configuration: engine={corrected.engine.value}, scope={corrected.scope.value}, "
        f"{len(warnings)} corrections"
    )
    return corrected, warnings


def objective_mix(config: AssignmentConfiguration, is_customer: bool) -> ObjectiveMix:
    """Normalized objective weights for a customer or prospect unit."""
    objectives = config.objectives if is_customer else config.prospectObjectives
    mix, _ = normalize_objective_weights(objectives)
    return mix


def snapshot_weights(config: AssignmentConfiguration) -> WeightsSnapshot:
    """Weights actually used by a run, for telemetry."""
    customer = objective_mix(config, is_customer=True)
    prospect = objective_mix(config, is_customer=False)
    penalties = {
        field_name: getattr(config.balance, field_name).penalty
        for field_name in BALANCE_FIELDS
        if getattr(config.balance, field_name).enabled
    }
    return WeightsSnapshot(
        continuity=customer.continuity,
        geography=customer.geography,
        teamAlignment=customer.team_alignment,
        prospectContinuity=prospect.continuity,
        prospectGeography=prospect.geography,
        prospectTeamAlignment=prospect.team_alignment,
        balancePenalties=penalties,
        intensityMultiplier=config.balance.intensityMultiplier,
    )


def enabled_dimensions(config: AssignmentConfiguration) -> List[BalanceDimension]:
    """Balance dimensions switched on for a run, in declaration order."""
    dimensions: List[BalanceDimension] = []
    for field_name, governed in BALANCE_FIELDS.items():
        if getattr(config.balance, field_name).enabled:
            dimensions.extend(governed)
    return dimensions


__all__ = [
    "BALANCE_FIELDS",
    "ObjectiveMix",
    "normalize_objective_weights",
    "validate_configuration",
    "objective_mix",
    "snapshot_weights",
    "enabled_dimensions",
]
