"""
Region and Tier Reference Tables Service

Loads the region hierarchy, territory keywords, and team-tier ordering that
scoring depends on, and answers the two questions scoring asks of them:

- How close are two regions? (exact / sibling / parent / global / unknown)
- How far apart are two team tiers? (absolute index distance)

The tables ship as package data (data/reference_tables.json) and can be
replaced per run through AssignmentConfiguration.referenceTables. Nothing here
is mutable module state: build_reference_index() returns a frozen index that
the engine builds once per run and passes by value to every scorer.

Territory Resolution Order:
1. Explicit territoryMappings from the run configuration (case-insensitive)
2. Direct match against a known parent or sub-region name
3. Keyword auto-mapping (whole-word, longest keyword first)
4. Unresolved -> None (scored with the neutral "unknown" constant)
"""

import json
import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from importlib import resources
from typing import Dict, Mapping, Optional, Pattern, Tuple

from book_engine.models.enums import RegionClass
from book_engine.models.schemas import ReferenceTables


logger = logging.getLogger(__name__)

REFERENCE_TABLES_RESOURCE = "reference_tables.json"


# =============================================================================
# Loading
# =============================================================================


@lru_cache()
def load_default_reference_tables() -> ReferenceTables:
    """
    Load the reference tables shipped with the package.

    The returned model is frozen, so caching it cannot leak state between runs.

    Returns:
        ReferenceTables parsed from book_engine/data/reference_tables.json
    """
    payload = resources.files("book_engine.data").joinpath(REFERENCE_TABLES_RESOURCE).read_text(
        encoding="utf-8"
    )
    tables = ReferenceTables.model_validate(json.loads(payload))
    logger.info(
        f"Loaded reference tables: {len(tables.regions)} parent regions, "
        f"{len(tables.territoryKeywords)} territory keywords, {len(tables.tierOrder)} tiers"
    )
    return tables


# =============================================================================
# Index
# =============================================================================


@dataclass(frozen=True)
class ReferenceIndex:
    """
    Precomputed lookups over one ReferenceTables instance.

    Attributes:
        canonical_regions: lower-case name -> canonical region name (parents and subs)
        parent_of: canonical sub-region -> canonical parent region
        parent_regions: canonical parent region names
        territory_overrides: lower-case territory -> canonical region (from configuration)
        keyword_patterns: (compiled whole-word pattern, region) pairs, longest keyword first
        tier_rank: lower-case tier -> index in tierOrder
        tier_names: lower-case tier -> canonical tier name
        employee_bands: (exclusive upper bound or None, tier) pairs in ascending order
    """
    canonical_regions: Mapping[str, str]
    parent_of: Mapping[str, str]
    parent_regions: frozenset
    territory_overrides: Mapping[str, str]
    keyword_patterns: Tuple[Tuple[Pattern, str], ...]
    tier_rank: Mapping[str, int]
    tier_names: Mapping[str, str]
    employee_bands: Tuple[Tuple[Optional[int], str], ...]


def build_reference_index(
    tables: Optional[ReferenceTables] = None,
    territory_mappings: Optional[Mapping[str, str]] = None,
) -> ReferenceIndex:
    """
    Build the lookup index for one run.

    Args:
        tables: Reference tables to index; the shipped defaults when None
        territory_mappings: Explicit territory -> region overrides from the
            run configuration

    Returns:
        Frozen ReferenceIndex
    """
    if tables is None:
        tables = load_default_reference_tables()

    canonical: Dict[str, str] = {}
    parent_of: Dict[str, str] = {}
    for parent, subs in tables.regions.items():
        canonical[parent.lower()] = parent
        for sub in subs:
            canonical[sub.lower()] = sub
            parent_of[sub] = parent

    overrides: Dict[str, str] = {}
    for territory, region in (territory_mappings or {}).items():
        target = canonical.get(region.strip().lower(), region.strip())
        overrides[territory.strip().lower()] = target
        # Targets outside the hierarchy become resolvable names so reps
        # covering them still produce exact matches
        canonical.setdefault(target.lower(), target)

    patterns = []
    for keyword in sorted(tables.territoryKeywords, key=lambda k: (-len(k), k)):
        region = tables.territoryKeywords[keyword]
        pattern = re.compile(r"\b" + re.escape(keyword.lower()) + r"\b")
        patterns.append((pattern, canonical.get(region.lower(), region)))

    tier_rank = {tier.lower(): idx for idx, tier in enumerate(tables.tierOrder)}
    tier_names = {tier.lower(): tier for tier in tables.tierOrder}

    bounded = sorted(
        (band for band in tables.employeeBands if band.maxEmployees is not None),
        key=lambda band: band.maxEmployees,
    )
    unbounded = [band for band in tables.employeeBands if band.maxEmployees is None]
    bands = tuple((band.maxEmployees, band.tier) for band in bounded + unbounded[:1])

    return ReferenceIndex(
        canonical_regions=canonical,
        parent_of=parent_of,
        parent_regions=frozenset(tables.regions.keys()),
        territory_overrides=overrides,
        keyword_patterns=tuple(patterns),
        tier_rank=tier_rank,
        tier_names=tier_names,
        employee_bands=bands,
    )


# =============================================================================
# Region Classification
# =============================================================================


def resolve_region(value: Optional[str], index: ReferenceIndex) -> Optional[str]:
    """
    Resolve a free-text territory or region string to a canonical region.

    Args:
        value: Territory string from an account or region string from a rep
        index: Reference index for the run

    Returns:
        Canonical region name, or None when the string cannot be resolved
    """
    if not value or not value.strip():
        return None

    key = value.strip().lower()

    if key in index.territory_overrides:
        return index.territory_overrides[key]

    if key in index.canonical_regions:
        return index.canonical_regions[key]

    for pattern, region in index.keyword_patterns:
        if pattern.search(key):
            return region

    return None


def parent_region(region: Optional[str], index: ReferenceIndex) -> Optional[str]:
    """Return the parent of a sub-region, the region itself for a parent, else None."""
    if region is None:
        return None
    if region in index.parent_regions:
        return region
    return index.parent_of.get(region)


def classify_region_pair(
    account_region: Optional[str],
    rep_region: Optional[str],
    index: ReferenceIndex,
) -> RegionClass:
    """
    Classify the relationship between two resolved regions.

    - EXACT: identical regions (case-insensitive)
    - SIBLING: two different sub-regions of the same parent
    - PARENT: one side is the other's parent region
    - GLOBAL: both resolved, different parent regions
    - UNKNOWN: either side unresolved

    Regions outside the hierarchy (e.g. custom mapping targets) can only be
    EXACT or GLOBAL.
    """
    if not account_region or not rep_region:
        return RegionClass.UNKNOWN

    if account_region.lower() == rep_region.lower():
        return RegionClass.EXACT

    account_parent = parent_region(account_region, index)
    rep_parent = parent_region(rep_region, index)

    if account_parent is None or rep_parent is None or account_parent != rep_parent:
        return RegionClass.GLOBAL

    account_is_sub = account_region in index.parent_of
    rep_is_sub = rep_region in index.parent_of
    if account_is_sub and rep_is_sub:
        return RegionClass.SIBLING

    return RegionClass.PARENT


# =============================================================================
# Tier Classification
# =============================================================================


def canonical_tier(tier: Optional[str], index: ReferenceIndex) -> Optional[str]:
    """Return the canonical spelling of a known tier, else None."""
    if not tier:
        return None
    return index.tier_names.get(tier.strip().lower())


def derive_team_tier(employees: Optional[int], index: ReferenceIndex) -> Optional[str]:
    """
    Derive a team tier from an employee count using the configured bands.

    Returns None when the employee count is missing or no band applies.
    """
    if employees is None:
        return None
    for upper, tier in index.employee_bands:
        if upper is None or employees < upper:
            return tier
    return None


def tier_index(tier: Optional[str], index: ReferenceIndex) -> Optional[int]:
    """Position of a tier in the configured order (smallest first), or None."""
    if not tier:
        return None
    return index.tier_rank.get(tier.strip().lower())


__all__ = [
    "REFERENCE_TABLES_RESOURCE",
    "ReferenceIndex",
    "load_default_reference_tables",
    "build_reference_index",
    "resolve_region",
    "parent_region",
    "classify_region_pair",
    "canonical_tier",
    "derive_team_tier",
    "tier_index",
]
