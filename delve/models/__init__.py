"""Delve data models."""
