"""Gantry: pipeline graph execution engine for GitHub-Actions-style definitions."""

__version__ = "0.1.0"
