"""Rallypoint: chapter, membership and activity management."""

__version__ = "0.1.0"
