"""
API package initialization.

Router modules:
- assignments: run a scenario, fetch a scenario's persisted assignment set
"""

from book_engine.api.assignments import router as assignments_router

__all__ = [
    "assignments_router",
]
