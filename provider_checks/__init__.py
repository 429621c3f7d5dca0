"""Synthetic health checks for AI inference providers."""

__version__ = "0.1.0"
