"""Conezia entity deduplication and contact consolidation engine."""

__version__ = "0.1.0"
