"""Background job orchestrator for the scenic-area data pipeline."""

__version__ = "0.1.0"
