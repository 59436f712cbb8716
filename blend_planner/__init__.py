"""Blend Planner - batch selection and blend ledger for gelatin production."""

__version__ = "0.1.0"
