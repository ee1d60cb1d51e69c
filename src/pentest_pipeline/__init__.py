"""Orchestration engine for multi-phase CLI security agent pipelines."""

__version__ = "0.1.0"
