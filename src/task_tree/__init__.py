"""Hierarchical task tracking with dependency-aware navigation."""

__version__ = "0.3.0"
