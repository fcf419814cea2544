"""Temporal dispatch of pipeline commands."""
