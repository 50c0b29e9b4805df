"""Constat: field inspection missions, building surveys and reports."""

__version__ = "0.3.0"
