"""
Book Assignment Engine Services

This package contains the business logic of the engine. Services are
stateless: every run passes its inputs explicitly and receives new objects
back.

Services:
- reference_tables: region hierarchy, territory keywords, tier ordering
- normalization: account/rep normalization and hierarchy rollup
- configuration: one-time configuration validation and weight normalization
- stability_locks: lock predicates and required owners
- scoring: continuity, geography, and team alignment scores
- thresholds: per-rep balance targets and bands
- solver / lp_builder: LP boundary (PuLP/CBC) and assignment program builder
- waterfall / relaxed: the two assignment engines
- metrics: run metrics and rationale text
- engine: run orchestration
- ingestion: CSV loading
- persistence: asyncpg storage of assignment sets and telemetry

All services are consumed by the API layer (book_engine/api/) and the batch
job (book_engine/jobs/).
"""

# =============================================================================
# Orchestration
# Single entry point for a run plus the pieces it shares with callers
# =============================================================================

from book_engine.services.engine import (
    run_assignment,
    apply_service_defaults,
    cascade_children,
)

# =============================================================================
# Engines
# =============================================================================

from book_engine.services.waterfall import run_waterfall
from book_engine.services.relaxed import run_relaxed

# =============================================================================
# Building Blocks
# =============================================================================

from book_engine.services.configuration import validate_configuration, normalize_objective_weights
from book_engine.services.normalization import normalize_scenario, restrict_to_scope
from book_engine.services.reference_tables import build_reference_index, load_default_reference_tables
from book_engine.services.scoring import score_pair
from book_engine.services.stability_locks import evaluate_stability_locks
from book_engine.services.thresholds import calculate_thresholds
from book_engine.services.metrics import compute_run_metrics, build_rationale
from book_engine.services.solver import PulpCbcSolver, SolverBackend, SolverResult
from book_engine.services.diagnostics import StructuralViolationError

# =============================================================================
# Ingestion & Persistence
# =============================================================================

from book_engine.services.ingestion import load_scenario_files, load_records
from book_engine.services.persistence import persist_run, fetch_assignments, ensure_schema


__all__ = [
    # Orchestration
    "run_assignment",
    "apply_service_defaults",
    "cascade_children",
    # Engines
    "run_waterfall",
    "run_relaxed",
    # Building blocks
    "validate_configuration",
    "normalize_objective_weights",
    "normalize_scenario",
    "restrict_to_scope",
    "build_reference_index",
    "load_default_reference_tables",
    "score_pair",
    "evaluate_stability_locks",
    "calculate_thresholds",
    "compute_run_metrics",
    "build_rationale",
    "PulpCbcSolver",
    "SolverBackend",
    "SolverResult",
    "StructuralViolationError",
    # Ingestion & persistence
    "load_scenario_files",
    "load_records",
    "persist_run",
    "fetch_assignments",
    "ensure_schema",
]
