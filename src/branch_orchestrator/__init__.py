"""Orchestrate remote agent branches and verify review findings."""

__version__ = "0.1.0"
