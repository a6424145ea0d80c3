"""Delve — multi-provider deep research workflows."""

__version__ = "0.4.0"
