"""
Scenario File Ingestion Service

Loads accounts, representatives, and opportunities from CSV files (or any
file-like object pandas can read) into validated input records.

Key Features:
- Header matching ignores case, spaces, and underscores
  ("Account ID", "account_id", and "accountId" all map to accountId)
- Required column validation per record kind
- Numeric columns coerced with pd.to_numeric(errors='coerce'); blank cells
  fall back to the model's neutral default
- Boolean columns accept true/false, yes/no, y/n, 1/0
- Rows that still fail model validation are skipped and reported

Every problem is returned as a ValidationIssue with a 1-based row number, so a
caller can surface the full list at once instead of failing on the first.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar, Union

import pandas as pd
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from book_engine.models import Account, Opportunity, Representative, ValidationIssue


logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
Source = Union[str, Any]

# =============================================================================
# CONSTANTS - Column Groups
# =============================================================================

REQUIRED_COLUMNS: Dict[Type[BaseModel], List[str]] = {
    Account: ["accountId"],
    Representative: ["repId"],
    Opportunity: ["opportunityId", "accountId"],
}

NUMERIC_COLUMNS: Dict[Type[BaseModel], List[str]] = {
    Account: [
        "arr",
        "hierarchyArr",
        "atr",
        "hierarchyAtr",
        "pipeline",
        "riskCount",
        "employees",
        "daysSinceOwnerChange",
        "ownerCount",
    ],
    Representative: [],
    Opportunity: ["netArr", "availableToRenew"],
}

# Numeric columns that must not go below zero
NON_NEGATIVE_COLUMNS = {
    "arr", "hierarchyArr", "atr", "hierarchyAtr", "pipeline", "riskCount",
    "employees", "daysSinceOwnerChange", "ownerCount", "availableToRenew",
}

INTEGER_COLUMNS = {"riskCount", "employees", "daysSinceOwnerChange", "ownerCount"}

BOOLEAN_COLUMNS: Dict[Type[BaseModel], List[str]] = {
    Account: ["isStrategic", "manualLock", "backfillEligible", "excludeFromAssignment"],
    Representative: [
        "isActive",
        "includeInAssignments",
        "isStrategic",
        "isBackfillSource",
        "isBackfillTarget",
        "isRenewalSpecialist",
        "isPlaceholder",
    ],
    Opportunity: [],
}

DATE_COLUMNS: Dict[Type[BaseModel], List[str]] = {
    Account: ["renewalDate"],
    Representative: [],
    Opportunity: [],
}

TRUE_VALUES = {"true", "t", "yes", "y", "1"}
FALSE_VALUES = {"false", "f", "no", "n", "0"}


@dataclass
class ScenarioFiles:
    """Records loaded for one scenario plus every issue found along the way."""
    accounts: List[Account] = field(default_factory=list)
    reps: List[Representative] = field(default_factory=list)
    opportunities: List[Opportunity] = field(default_factory=list)
    issues: List[ValidationIssue] = field(default_factory=list)


# =============================================================================
# Helpers
# =============================================================================


def _canonical(name: Any) -> str:
    return "".join(ch for ch in str(name).lower() if ch.isalnum())


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return value is pd.NaT


def _first_rows(mask: pd.Series) -> List[int]:
    # 0-based DataFrame index -> 1-based data row number
    return [int(i) + 1 for i in mask[mask].index.tolist()[:5]]


def canonicalize_columns(df: pd.DataFrame, model: Type[BaseModel]) -> pd.DataFrame:
    """
    Rename DataFrame columns to the model's field names.

    Columns that match no field are dropped.
    """
    lookup = {_canonical(name): name for name in model.model_fields}
    renamed = {}
    for column in df.columns:
        target = lookup.get(_canonical(column))
        if target is not None and target not in renamed.values():
            renamed[column] = target
    ignored = [c for c in df.columns if c not in renamed]
    if ignored:
        logger.debug(f"Ignoring unknown {model.__name__} columns: {ignored}")
    return df[list(renamed)].rename(columns=renamed)


# =============================================================================
# VALIDATION FUNCTIONS
# =============================================================================


def validate_columns(df: pd.DataFrame, model: Type[BaseModel]) -> List[ValidationIssue]:
    """
    Check that every required column of a record kind is present.

    Args:
        df: DataFrame with canonicalized column names
        model: Record model the rows will be validated against

    Returns:
        List of ValidationIssue for each missing column
    """
    issues: List[ValidationIssue] = []
    for column in REQUIRED_COLUMNS.get(model, []):
        if column not in df.columns:
            issues.append(ValidationIssue(
                field=column,
                message=f"Required column '{column}' is missing for {model.__name__} records",
            ))
    return issues


def coerce_numeric_columns(
    df: pd.DataFrame,
    model: Type[BaseModel],
    issues: List[ValidationIssue],
) -> pd.DataFrame:
    """
    Convert numeric columns in place of their string values.

    Non-numeric cells become NaN (and so fall back to the model default);
    negative values in non-negative columns are clamped to 0. Both are
    reported.
    """
    result = df.copy()
    for column in NUMERIC_COLUMNS.get(model, []):
        if column not in result.columns:
            continue
        raw = result[column]
        numeric = pd.to_numeric(raw, errors="coerce")

        invalid_mask = numeric.isna() & raw.notna() & (raw.astype(str).str.strip() != "")
        if invalid_mask.any():
            rows = _first_rows(invalid_mask)
            issues.append(ValidationIssue(
                field=column,
                message=(
                    f"Found {int(invalid_mask.sum())} non-numeric values in column '{column}'; "
                    f"defaults used. First rows: {rows}"
                ),
                rowNumber=rows[0],
            ))

        if column in NON_NEGATIVE_COLUMNS:
            negative_mask = numeric < 0
            if negative_mask.any():
                rows = _first_rows(negative_mask)
                issues.append(ValidationIssue(
                    field=column,
                    message=(
                        f"Found {int(negative_mask.sum())} negative values in column '{column}'; "
                        f"clamped to 0. First rows: {rows}"
                    ),
                    rowNumber=rows[0],
                ))
                numeric = numeric.clip(lower=0)

        result[column] = numeric
    return result


def parse_boolean(value: Any) -> Optional[bool]:
    """Parse a CSV truth value; None when blank or unrecognized."""
    if _is_blank(value):
        return None
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    return None


def coerce_boolean_columns(
    df: pd.DataFrame,
    model: Type[BaseModel],
    issues: List[ValidationIssue],
) -> pd.DataFrame:
    result = df.copy()
    for column in BOOLEAN_COLUMNS.get(model, []):
        if column not in result.columns:
            continue
        raw = result[column]
        parsed = raw.map(parse_boolean)
        invalid_mask = parsed.isna() & raw.map(lambda v: not _is_blank(v))
        if invalid_mask.any():
            rows = _first_rows(invalid_mask)
            issues.append(ValidationIssue(
                field=column,
                message=(
                    f"Found {int(invalid_mask.sum())} unrecognized boolean values in column "
                    f"'{column}'; defaults used. First rows: {rows}"
                ),
                rowNumber=rows[0],
            ))
        result[column] = parsed.astype(object)
    return result


def coerce_date_columns(
    df: pd.DataFrame,
    model: Type[BaseModel],
    issues: List[ValidationIssue],
) -> pd.DataFrame:
    result = df.copy()
    for column in DATE_COLUMNS.get(model, []):
        if column not in result.columns:
            continue
        raw = result[column]
        parsed = pd.to_datetime(raw, errors="coerce")
        invalid_mask = parsed.isna() & raw.map(lambda v: not _is_blank(v))
        if invalid_mask.any():
            rows = _first_rows(invalid_mask)
            issues.append(ValidationIssue(
                field=column,
                message=(
                    f"Found {int(invalid_mask.sum())} invalid dates in column '{column}'; "
                    f"left empty. First rows: {rows}"
                ),
                rowNumber=rows[0],
            ))
        result[column] = [None if pd.isna(value) else value.date() for value in parsed]
    return result


# =============================================================================
# TRANSFORMATION FUNCTIONS
# =============================================================================


def frame_to_records(
    df: pd.DataFrame,
    model: Type[ModelT],
    issues: List[ValidationIssue],
) -> List[ModelT]:
    """
    Validate each row into a model instance.

    Blank cells are dropped so the model's defaults apply. Rows failing
    validation are skipped with one issue per failing field.
    """
    records: List[ModelT] = []
    for position, row in enumerate(df.to_dict(orient="records"), start=1):
        values: Dict[str, Any] = {}
        for key, value in row.items():
            if _is_blank(value):
                continue
            if key in INTEGER_COLUMNS:
                value = int(value)
            elif isinstance(value, str):
                value = value.strip()
            values[key] = value
        try:
            records.append(model.model_validate(values))
        except PydanticValidationError as e:
            for error in e.errors():
                location = ".".join(str(part) for part in error["loc"]) or "row"
                issues.append(ValidationIssue(
                    field=location,
                    message=f"{model.__name__} row skipped: {error['msg']}",
                    rowNumber=position,
                ))
    return records


def load_records(source: Source, model: Type[ModelT]) -> Tuple[List[ModelT], List[ValidationIssue]]:
    """
    Load one CSV source into validated records.

    Args:
        source: Path or file-like object
        model: Account, Representative, or Opportunity

    Returns:
        (records, issues). Missing required columns return no records.
    """
    issues: List[ValidationIssue] = []
    df = pd.read_csv(source, dtype=str, keep_default_na=True)
    df = canonicalize_columns(df, model)

    column_issues = validate_columns(df, model)
    if column_issues:
        logger.warning(f"{model.__name__} file rejected: {[i.field for i in column_issues]} missing")
        return [], column_issues

    df = coerce_numeric_columns(df, model, issues)
    df = coerce_boolean_columns(df, model, issues)
    df = coerce_date_columns(df, model, issues)
    records = frame_to_records(df, model, issues)

    logger.info(f"Loaded {len(records)} of {len(df)} {model.__name__} rows with {len(issues)} issues")
    return records, issues


def load_accounts(source: Source) -> Tuple[List[Account], List[ValidationIssue]]:
    return load_records(source, Account)


def load_reps(source: Source) -> Tuple[List[Representative], List[ValidationIssue]]:
    return load_records(source, Representative)


def load_opportunities(source: Source) -> Tuple[List[Opportunity], List[ValidationIssue]]:
    return load_records(source, Opportunity)


def load_scenario_files(
    accounts_source: Source,
    reps_source: Source,
    opportunities_source: Optional[Source] = None,
) -> ScenarioFiles:
    """
    Load the account, rep, and (optional) opportunity files of one scenario.
    """
    loaded = ScenarioFiles()

    loaded.accounts, issues = load_accounts(accounts_source)
    loaded.issues.extend(issues)
    loaded.reps, issues = load_reps(reps_source)
    loaded.issues.extend(issues)
    if opportunities_source is not None:
        loaded.opportunities, issues = load_opportunities(opportunities_source)
        loaded.issues.extend(issues)

    return loaded


__all__ = [
    "REQUIRED_COLUMNS",
    "NUMERIC_COLUMNS",
    "BOOLEAN_COLUMNS",
    "DATE_COLUMNS",
    "ScenarioFiles",
    "canonicalize_columns",
    "validate_columns",
    "coerce_numeric_columns",
    "parse_boolean",
    "coerce_boolean_columns",
    "coerce_date_columns",
    "frame_to_records",
    "load_records",
    "load_accounts",
    "load_reps",
    "load_opportunities",
    "load_scenario_files",
]
