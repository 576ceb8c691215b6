"""Validation orchestrator - runs environment validators, applies safe fixes, reports."""

__version__ = "0.1.0"
