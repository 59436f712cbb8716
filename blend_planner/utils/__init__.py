"""Utilities package for blend-planner."""
