"""Lifecycle orchestration for a fleet of aggregator and worker containers."""

__version__ = "0.3.0"
