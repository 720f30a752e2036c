"""Execution resilience primitives."""
