"""Dependency-wave orchestrator for tracker issues."""

__version__ = "0.1.0"
