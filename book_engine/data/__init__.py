"""Package data: reference tables shipped with the engine."""
