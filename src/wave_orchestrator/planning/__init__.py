"""Dependency graph construction and wave scheduling."""
