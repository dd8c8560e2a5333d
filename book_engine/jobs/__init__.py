"""
Batch jobs for the Book Assignment Engine.

- run_scenario: CSV files in, run summary out (optionally persisted)
"""

from book_engine.jobs.run_scenario import (
    ScenarioJobResult,
    format_summary,
    load_configuration,
    run_scenario_job,
)

__all__ = [
    "ScenarioJobResult",
    "format_summary",
    "load_configuration",
    "run_scenario_job",
]
