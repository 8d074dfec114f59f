"""Bounded-concurrency execution of one wave."""
