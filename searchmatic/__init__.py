"""Searchmatic: AI-assisted systematic literature reviews."""

__version__ = "1.0.0"
