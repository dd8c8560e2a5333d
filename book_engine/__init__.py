"""
Book Assignment Engine Package.

FastAPI service layer that decides which sales representative owns each
customer or prospect account for a planning scenario. Provides two assignment
strategies (priority waterfall and relaxed global optimization) over a shared
set of scoring functions and capacity thresholds.

Subpackages:
    - api: FastAPI route handlers
    - core: Configuration, database, and dependencies
    - models: Pydantic schemas and enums
    - services: Normalization, locks, scoring, engines, metrics, persistence
    - jobs: Batch entry points (CSV scenario runs)
"""

__version__ = "1.0.0"
